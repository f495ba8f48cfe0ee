"""
The parts of the Docker Registry HTTP API V2 needed to rebase an image.
"""

from typing import Callable, Iterable, Optional, Tuple, Union
import hashlib
import logging
import tempfile

import requests

from imgrebase import exceptions
from imgrebase.image import (Manifest, Config, ImageData, SCHEMA2_MIMETYPE,
                             OCIV1_MANIFEST_MIMETYPE, hash_bytes, split_digest)
from imgrebase.reference import Reference, Tag
from imgrebase.transport import new_session

logger = logging.getLogger(__name__)

_accept_header = {'Accept': ', '.join((
    SCHEMA2_MIMETYPE,
    OCIV1_MANIFEST_MIMETYPE,
))}

Progress = Callable[[str, bytes, int], None]

def _served_type(r):
    content_type = r.headers.get('Content-Type', '').split(';')[0].strip()
    # Registries serve some manifests as plain JSON
    if content_type in (SCHEMA2_MIMETYPE, OCIV1_MANIFEST_MIMETYPE):
        return content_type
    return None

class _ReportingFile(object):
    def __init__(self, dgst, f, cb):
        self._dgst = dgst
        self._f = f
        self._cb = cb
        self._size = requests.utils.super_len(f)
        # furthest offset already reported
        self._reported = f.tell()
        cb(dgst, b'', self._size)
    # define __iter__ so requests thinks we're a stream
    # (models.py, PreparedRequest.prepare_body)
    # pylint: disable=non-iterator-returned
    def __iter__(self):
        assert not "called"
    # define fileno, tell and mode so requests can find length
    # (utils.py, super_len)
    def fileno(self):
        return self._f.fileno()
    def tell(self):
        return self._f.tell()
    # seek lets a challenged upload be rewound and sent again
    def seek(self, offset, whence=0):
        return self._f.seek(offset, whence)
    @property
    def mode(self):
        return self._f.mode
    def read(self, n=-1):
        start = self._f.tell()
        chunk = self._f.read(n)
        # a rewound body is read again after a challenge
        unreported = chunk[max(self._reported - start, 0):]
        if unreported:
            self._cb(self._dgst, unreported, self._size)
            self._reported = start + len(chunk)
        return chunk

class RegistryClient(object):
    """
    Client for the registry operations used by a rebase: fetching manifests
    and blobs, mounting and uploading blobs, and pushing manifests.

    Requests go through a `requests.Session`. By default the session routes
    them through an :class:`imgrebase.transport.AuthTransport`, so credentials
    from the Docker client configuration are used.

    Can act as a context manager, closing the session when the context exits.
    """
    def __init__(self,
            session: Optional[requests.Session]=None,
            insecure: bool=False,
            tlsverify: Union[bool, str]=True,
            timeout: Optional[float]=None):
        """
        :param session: Session to send requests with. Defaults to :func:`imgrebase.transport.new_session`.

        :param insecure: Use HTTP instead of HTTPS (which is the default) when connecting to registries.

        :param tlsverify: When set to False, do not verify TLS certificates. When pointed to a `<ca bundle>.crt` file use this for TLS verification.

        :param timeout: Optional timeout for requests.
        """
        self._session = new_session() if session is None else session
        self._insecure = insecure
        self._tlsverify = tlsverify
        self._timeout = timeout

    def _url(self, registry, repository, path):
        return '%s://%s/v2/%s/%s' % ('http' if self._insecure else 'https',
                                     registry, repository, path)

    def _request(self, method, url, expected=(200,), **kwargs):
        r = self._session.request(method, url,
                                  verify=self._tlsverify,
                                  timeout=self._timeout,
                                  **kwargs)
        if r.status_code not in expected:
            raise exceptions.HTTPError(r)
        return r

    def get_manifest(self, ref: Reference) -> Tuple[Manifest, str]:
        """
        Fetch an image's manifest.

        :param ref: Image to fetch, by tag or digest.

        :returns: Tuple of the manifest and its digest. For tag references the digest comes from the registry's ``Docker-Content-Digest`` header.
        """
        r = self._request('get',
                          self._url(ref.registry, ref.repository, 'manifests/' + ref.tag_or_digest),
                          headers=_accept_header)
        manifest = Manifest.from_json(r.content, _served_type(r))
        if ref.is_digest:
            return manifest, ref.digest
        return manifest, r.headers.get('Docker-Content-Digest') or hash_bytes(r.content)

    def get_blob(self, registry: str, repository: str, digest: str,
            chunk_size: Optional[int]=None) -> Iterable[bytes]:
        """
        Download a blob given the hash of its content.

        :returns: Iterator over the blob's content. Raises :class:`imgrebase.exceptions.DigestMismatchError` at the end of the content if it doesn't hash to ``digest``.
        """
        if chunk_size is None:
            chunk_size = 8192
        method, _ = split_digest(digest)
        r = self._request('get', self._url(registry, repository, 'blobs/' + digest), stream=True)
        class Chunks(object):
            # pylint: disable=too-few-public-methods
            def __iter__(self):
                hasher = hashlib.new(method)
                try:
                    for chunk in r.iter_content(chunk_size):
                        hasher.update(chunk)
                        yield chunk
                finally:
                    r.close()
                dgst = method + ':' + hasher.hexdigest()
                if dgst != digest:
                    raise exceptions.DigestMismatchError(dgst, digest)
        return Chunks()

    def get_config(self, registry: str, repository: str, digest: str) -> Config:
        split_digest(digest)
        r = self._request('get', self._url(registry, repository, 'blobs/' + digest))
        dgst = hash_bytes(r.content)
        if dgst != digest:
            raise exceptions.DigestMismatchError(dgst, digest)
        return Config.from_json(r.content)

    def get_image(self, ref: Reference) -> ImageData:
        """
        Fetch an image's manifest and config.
        """
        manifest, digest = self.get_manifest(ref)
        config = self.get_config(ref.registry, ref.repository, manifest.config['digest'])
        return ImageData(manifest, config, digest)

    def mount_blob(self, to: Reference, from_: Reference, digest: str) -> bool:
        """
        Mount a blob from another repository in the same registry.

        :param to: Image whose repository should receive the blob.

        :param from_: Image whose repository holds the blob.

        :param digest: Hash of the blob's content.

        :returns: Whether the blob is now available in ``to``'s repository. ``False`` means the registry didn't mount it and it must be copied.
        """
        if to.registry != from_.registry:
            return False
        if to.repository == from_.repository:
            return True
        r = self._request('post',
                          self._url(to.registry, to.repository, 'blobs/uploads/'),
                          expected=(requests.codes.created, requests.codes.accepted),
                          params={'mount': digest, 'from': from_.repository},
                          headers=_accept_header)
        # pylint: disable=no-member
        if r.status_code == requests.codes.accepted:
            logger.debug('%s: mount of %s from %s declined', to.registry, digest, from_.repository)
            return False
        return True

    def put_blob(self, registry: str, repository: str, digest: str, data):
        """
        Upload a blob in a single request.

        :param data: Bytes or a file object holding the blob's content.
        """
        self._request('post',
                      self._url(registry, repository, 'blobs/uploads/'),
                      expected=(requests.codes.created,),
                      params={'digest': digest},
                      data=data,
                      headers={'Content-Type': 'application/octet-stream'})

    def mirror_blob(self, to: Reference, from_: Reference, digest: str,
            progress: Optional[Progress]=None):
        """
        Copy a blob by downloading it from ``from_``'s repository and
        uploading it to ``to``'s repository.

        :param progress: Optional function to call as the upload progresses. The function will be called with the blob's hash, the chunk just read and the total size of the blob.
        """
        logger.info('copying %s from %s/%s to %s/%s', digest,
                    from_.registry, from_.repository, to.registry, to.repository)
        with tempfile.TemporaryFile() as f:
            for chunk in self.get_blob(from_.registry, from_.repository, digest):
                f.write(chunk)
            f.seek(0)
            data = _ReportingFile(digest, f, progress) if progress else f
            self.put_blob(to.registry, to.repository, digest, data)

    def put_manifest(self, ref: Reference, manifest: Manifest) -> str:
        """
        Push a manifest to a tag.

        :returns: Digest of the pushed manifest.
        """
        if not isinstance(ref.ident, Tag):
            raise exceptions.PreconditionError('cannot push to digest reference %s' % ref)
        content = manifest.to_json()
        # Registries answer 201 Created, some answer 200
        self._request('put',
                      self._url(ref.registry, ref.repository, 'manifests/' + ref.tag),
                      expected=(requests.codes.ok, requests.codes.created),
                      data=content,
                      headers={'Content-Type': manifest.media_type,
                               'Accept': manifest.media_type})
        return hash_bytes(content)

    def close(self):
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
