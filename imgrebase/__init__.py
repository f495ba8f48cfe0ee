"""
Module for rebasing images in a Docker v2 registry
"""

from typing import Callable, Iterator, List, Optional, Sequence, Tuple, TypeVar, Union
from concurrent import futures
import contextlib
import logging

import requests

from imgrebase import exceptions
from imgrebase.image import (Manifest, Config, ImageData, REBASE_LABEL,
                             hash_bytes, split_digest)
from imgrebase.reference import Reference, Tag, Digest, parse
from imgrebase.registry import RegistryClient
from imgrebase.transport import AuthTransport, CredentialCache, new_session

__all__ = [
    'Rebaser', 'RegistryClient', 'AuthTransport', 'CredentialCache',
    'new_session', 'Reference', 'Tag', 'Digest', 'parse', 'Manifest',
    'Config', 'ImageData', 'hash_bytes', 'split_digest', 'verify_basis',
    'splice', 'bases_from_label', 'rebase_label', 'exceptions',
]

logger = logging.getLogger(__name__)

E = TypeVar('E')

@contextlib.contextmanager
def _stage(name: str) -> Iterator[None]:
    try:
        yield
    except exceptions.RebaseError as ex:
        if ex.stage is None:
            ex.stage = name
        raise
    except requests.exceptions.RequestException as ex:
        err = exceptions.TransportError(ex)
        err.stage = name
        raise err from ex

def _as_reference(ref: Union[None, str, Reference]) -> Optional[Reference]:
    return parse(ref) if isinstance(ref, str) else ref

def verify_basis(original: Reference, original_data: ImageData,
                 old_base: Reference, old_data: ImageData):
    """
    Check that an image was built on a base image: the base's layers must
    be the first layers of the image, and the image must have at least as
    many history entries and diff IDs as the base.

    Raises :class:`imgrebase.exceptions.BasisMismatchError` if not.
    """
    orig_layers = original_data.manifest.layer_digests
    old_layers = old_data.manifest.layer_digests
    if len(old_layers) > len(orig_layers) or \
       len(old_data.config.history) > len(original_data.config.history) or \
       len(old_data.config.diff_ids) > len(original_data.config.diff_ids):
        raise exceptions.BasisMismatchError(original, old_base)
    for i, dgst in enumerate(old_layers):
        if orig_layers[i] != dgst:
            raise exceptions.BasisMismatchError(original, old_base)

def splice(new_base: Sequence[E], original: Sequence[E], old_base_len: int) -> List[E]:
    """
    Replace the first ``old_base_len`` elements of ``original`` with
    ``new_base``.
    """
    return list(new_base) + list(original[old_base_len:])

def rebase_label(new_base: Reference, new_base_digest: str) -> str:
    """
    Value of the ``rebase`` label recording which base an image was rebased
    onto: the base's digest reference followed by its tag reference.
    """
    return '%s %s' % (new_base.with_digest(new_base_digest), new_base)

def bases_from_label(config: Config) -> Tuple[Reference, Reference]:
    """
    Read the old and new base images from an image's ``rebase`` label.

    :returns: Tuple of the old base (by digest) and the new base (by tag).
    """
    lbl = config.get_label(REBASE_LABEL)
    if lbl is None:
        raise exceptions.LabelError('could not find %r label indicating bases' % REBASE_LABEL)
    parts = lbl.split(' ')
    if len(parts) != 2:
        raise exceptions.LabelError('malformed %r label: %r' % (REBASE_LABEL, lbl))
    try:
        old_base = parse(parts[0])
        new_base = parse(parts[1])
    except exceptions.ParseError as ex:
        raise exceptions.LabelError('malformed base in %r label: %s' % (REBASE_LABEL, ex)) from ex
    if not old_base.is_digest:
        raise exceptions.LabelError('old base from label must be a digest: %s' % old_base)
    if new_base.is_digest:
        raise exceptions.LabelError('new base from label must not be a digest: %s' % new_base)
    return old_base, new_base

class Rebaser(object):
    """
    Rebases images: builds an image identical to an original except that
    the layers of the base it was built on are replaced by those of a new
    base, and pushes it, all by talking to the registry.
    """
    def __init__(self, client: Optional[RegistryClient]=None, max_workers: int=4):
        """
        :param client: Registry client. Defaults to a :class:`imgrebase.registry.RegistryClient` using Docker client credentials.

        :param max_workers: Maximum number of layers to transfer at once.
        """
        self._client = RegistryClient() if client is None else client
        self._max_workers = max_workers

    def _fetch(self, stage, ref):
        with _stage(stage):
            logger.info('fetching %s', ref)
            return self._client.get_image(ref)

    def _transfer(self, to: Reference, from_: Reference, layers: List[dict],
            progress: Optional[Callable[[str, bytes, int], None]]):
        if to.registry == from_.registry and to.repository == from_.repository:
            return
        same_registry = to.registry == from_.registry

        def copy(digest):
            if same_registry and self._client.mount_blob(to, from_, digest):
                logger.debug('mounted %s from %s into %s', digest, from_.repository, to.repository)
                return
            if same_registry:
                logger.info('registry did not mount %s, copying it instead', digest)
            self._client.mirror_blob(to, from_, digest, progress)

        digests = list(dict.fromkeys(layer['digest'] for layer in layers))
        with futures.ThreadPoolExecutor(max_workers=self._max_workers) as p:
            jobs = [p.submit(copy, dgst) for dgst in digests]
            try:
                for job in futures.as_completed(jobs):
                    job.result()
            except Exception:
                for job in jobs:
                    job.cancel()
                raise

    def rebase(self,
            original: Union[str, Reference],
            old_base: Union[None, str, Reference],
            new_base: Union[None, str, Reference],
            rebased: Union[str, Reference],
            progress: Optional[Callable[[str, bytes, int], None]]=None) -> Reference:
        # pylint: disable=too-many-arguments,too-many-locals
        """
        Replace ``old_base``'s layers in ``original`` with ``new_base``'s and
        push the result to ``rebased``.

        :param original: Image to rebase.

        :param old_base: Base image ``original`` was built on. If both ``old_base`` and ``new_base`` are ``None``, they are read from the ``rebase`` label of ``original``.

        :param new_base: Base image to rebase onto.

        :param rebased: Tag to push the rebased image to.

        :param progress: Optional function to call as copied layers are uploaded, when they can't be mounted. It is called with the layer's hash, the chunk just read and the layer's size.

        :returns: Digest reference of the pushed image.
        """
        original = _as_reference(original)
        old_base = _as_reference(old_base)
        new_base = _as_reference(new_base)
        rebased = _as_reference(rebased)

        if original is None:
            raise exceptions.PreconditionError('original image must be specified')
        if rebased is None:
            raise exceptions.PreconditionError('rebased image must be specified')
        if rebased.is_digest:
            raise exceptions.PreconditionError('rebased image cannot be a digest: %s' % rebased)
        if (old_base is None) != (new_base is None):
            raise exceptions.PreconditionError(
                'old base and new base must both be specified, or neither be specified')

        with futures.ThreadPoolExecutor(max_workers=3) as p:
            if old_base is None:
                orig_data = self._fetch('GET original', original)
                with _stage('read rebase label'):
                    old_base, new_base = bases_from_label(orig_data.config)
                jobs = [p.submit(self._fetch, 'GET old base', old_base),
                        p.submit(self._fetch, 'GET new base', new_base)]
                old_data, new_data = [job.result() for job in jobs]
            else:
                jobs = [p.submit(self._fetch, 'GET original', original),
                        p.submit(self._fetch, 'GET old base', old_base),
                        p.submit(self._fetch, 'GET new base', new_base)]
                orig_data, old_data, new_data = [job.result() for job in jobs]

        with _stage('verify basis'):
            verify_basis(original, orig_data, old_base, old_data)

        manifest = orig_data.manifest
        config = orig_data.config
        old_len = len(old_data.manifest.layers)

        with _stage('transfer new base layers'):
            self._transfer(rebased, new_base, new_data.manifest.layers, progress)
        with _stage('transfer original layers'):
            self._transfer(rebased, original, manifest.layers[old_len:], progress)

        manifest.layers = splice(new_data.manifest.layers, manifest.layers, old_len)
        config.history = splice(new_data.config.history,
                                config.history,
                                len(old_data.config.history))
        config.diff_ids = splice(new_data.config.diff_ids,
                                 config.diff_ids,
                                 len(old_data.config.diff_ids))

        # Let a later rebase find newer releases of the same base tag
        if not new_base.is_digest:
            config.set_label(REBASE_LABEL, rebase_label(new_base, new_data.digest))

        blob = config.to_json()
        config_digest = hash_bytes(blob)
        manifest.set_config(config_digest, len(blob))

        with _stage('POST new config blob'):
            logger.info('pushing config %s to %s/%s', config_digest, rebased.registry, rebased.repository)
            self._client.put_blob(rebased.registry, rebased.repository, config_digest, blob)

        with _stage('PUT new manifest'):
            logger.info('pushing manifest to %s', rebased)
            dgst = self._client.put_manifest(rebased, manifest)

        return rebased.with_digest(dgst)
