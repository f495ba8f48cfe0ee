"""
Manifest and config documents of a Docker v2 schema 2 image.

Both documents are kept as the decoded JSON object they were read from, so
fields this package doesn't know about survive a read-modify-write cycle.
"""

from typing import List, Dict, Optional, NamedTuple
import hashlib
import json

from imgrebase import exceptions

SCHEMA2_MIMETYPE = 'application/vnd.docker.distribution.manifest.v2+json'
SCHEMA2_LIST_MIMETYPE = 'application/vnd.docker.distribution.manifest.list.v2+json'
OCIV1_MANIFEST_MIMETYPE = 'application/vnd.oci.image.manifest.v1+json'
OCIV1_INDEX_MIMETYPE = 'application/vnd.oci.image.index.v1+json'
OCIV1_CONFIG_MIMETYPE = 'application/vnd.oci.image.config.v1+json'

REBASE_LABEL = 'rebase'

def hash_bytes(buf: bytes) -> str:
    """
    Hash bytes using the same method the registry uses (currently SHA-256).

    :param buf: Bytes to hash

    :returns: Hex-encoded hash of the content (prefixed by ``sha256:``)
    """
    sha256 = hashlib.sha256()
    sha256.update(buf)
    return 'sha256:' + sha256.hexdigest()

def split_digest(s):
    method, _, digest = s.partition(':')
    if method != 'sha256' or not digest:
        raise exceptions.ManifestError('unsupported digest: %s' % s)
    return method, digest

def _to_json(doc):
    return json.dumps(doc, separators=(',', ':'), ensure_ascii=False).encode('utf-8')

class Manifest(object):
    """
    Registry index for an image: a config blob descriptor and the ordered
    layer descriptors, bottom layer first.
    """
    def __init__(self, doc: Dict, media_type: Optional[str]=None):
        """
        :param doc: Decoded manifest.

        :param media_type: Type the registry served the manifest as. Used when the manifest itself has no ``mediaType`` field, which is optional for OCI manifests.
        """
        if doc.get('schemaVersion') != 2:
            raise exceptions.ManifestError(
                'unsupported manifest schema version: %s' % doc.get('schemaVersion'))
        media_type = doc.get('mediaType') or media_type
        if media_type in (SCHEMA2_LIST_MIMETYPE, OCIV1_INDEX_MIMETYPE) or \
           'layers' not in doc or 'config' not in doc:
            raise exceptions.ManifestError(
                'not an image manifest: %s' % (media_type or 'no media type'))
        self._doc = doc
        self._media_type = media_type

    @classmethod
    def from_json(cls, content: bytes, media_type: Optional[str]=None) -> 'Manifest':
        try:
            doc = json.loads(content)
        except ValueError as ex:
            raise exceptions.ManifestError('malformed manifest: %s' % ex)
        if not isinstance(doc, dict):
            raise exceptions.ManifestError('malformed manifest: not an object')
        return cls(doc, media_type)

    @property
    def media_type(self) -> str:
        if self._doc.get('mediaType'):
            return self._doc['mediaType']
        if self._media_type:
            return self._media_type
        if self._doc['config'].get('mediaType') == OCIV1_CONFIG_MIMETYPE:
            return OCIV1_MANIFEST_MIMETYPE
        return SCHEMA2_MIMETYPE

    @property
    def config(self) -> Dict:
        return self._doc['config']

    def set_config(self, digest: str, size: int):
        self._doc['config'] = dict(self._doc['config'], digest=digest, size=size)

    @property
    def layers(self) -> List[Dict]:
        return list(self._doc['layers'])

    @layers.setter
    def layers(self, value: List[Dict]):
        self._doc['layers'] = list(value)

    @property
    def layer_digests(self) -> List[str]:
        return [layer['digest'] for layer in self._doc['layers']]

    def to_json(self) -> bytes:
        return _to_json(self._doc)

class Config(object):
    """
    Image configuration document. Only ``history``, ``rootfs.diff_ids`` and
    the labels map are ever rewritten.
    """
    def __init__(self, doc: Dict):
        self._doc = doc

    @classmethod
    def from_json(cls, content: bytes) -> 'Config':
        try:
            doc = json.loads(content)
        except ValueError as ex:
            raise exceptions.ManifestError('malformed image config: %s' % ex)
        if not isinstance(doc, dict):
            raise exceptions.ManifestError('malformed image config: not an object')
        return cls(doc)

    @property
    def history(self) -> List[Dict]:
        return list(self._doc.get('history') or [])

    @history.setter
    def history(self, value: List[Dict]):
        if value or 'history' in self._doc:
            self._doc['history'] = list(value)

    @property
    def diff_ids(self) -> List[str]:
        rootfs = self._doc.get('rootfs') or {}
        return list(rootfs.get('diff_ids') or [])

    @diff_ids.setter
    def diff_ids(self, value: List[str]):
        rootfs = self._doc.get('rootfs') or {'type': 'layers'}
        rootfs['diff_ids'] = list(value)
        self._doc['rootfs'] = rootfs

    def _labels_key(self):
        container_config = self._doc.get('config') or {}
        if 'Labels' not in container_config and 'labels' in container_config:
            return 'labels'
        return 'Labels'

    @property
    def labels(self) -> Dict[str, str]:
        container_config = self._doc.get('config') or {}
        return dict(container_config.get(self._labels_key()) or {})

    def set_label(self, key: str, value: str):
        key_name = self._labels_key()
        container_config = self._doc.get('config')
        if container_config is None:
            container_config = self._doc['config'] = {}
        labels = container_config.get(key_name)
        if labels is None:
            labels = container_config[key_name] = {}
        labels[key] = value

    def get_label(self, key: str) -> Optional[str]:
        return self.labels.get(key)

    def to_json(self) -> bytes:
        return _to_json(self._doc)

class ImageData(NamedTuple):
    """ A manifest, its config and the digest the manifest was fetched by. """
    manifest: Manifest
    config: Config
    digest: str
