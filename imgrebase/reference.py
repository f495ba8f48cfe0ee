"""
Image references of the form ``[registry[:port]/]repository[:tag|@digest]``.
"""

from dataclasses import dataclass
from typing import Union
import re

from imgrebase import exceptions

DEFAULT_REGISTRY = 'index.docker.io'
DEFAULT_TAG = 'latest'

_legacy_registries = ('docker.io', 'index.docker.io', 'registry-1.docker.io')

_component_re = re.compile(r'^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$')
_domain_re = re.compile(r'^(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])'
                        r'(?:\.(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9]))*'
                        r'(?::[0-9]+)?$')
_tag_re = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
_digest_re = re.compile(r'^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-f]{32,}$')

@dataclass(frozen=True)
class Tag(object):
    """ Mutable pointer to an image. """
    value: str

@dataclass(frozen=True)
class Digest(object):
    """ Content hash of an image's manifest. """
    value: str

@dataclass(frozen=True)
class Reference(object):
    """
    Identifies an image in a registry. ``ident`` is either a :class:`Tag`
    or a :class:`Digest`, never both.
    """
    registry: str
    repository: str
    ident: Union[Tag, Digest]

    @property
    def is_digest(self) -> bool:
        return isinstance(self.ident, Digest)

    @property
    def tag(self):
        return self.ident.value if isinstance(self.ident, Tag) else None

    @property
    def digest(self):
        return self.ident.value if isinstance(self.ident, Digest) else None

    @property
    def tag_or_digest(self) -> str:
        return self.ident.value

    def with_digest(self, digest: str) -> 'Reference':
        return Reference(self.registry, self.repository, Digest(digest))

    def __str__(self):
        if isinstance(self.ident, Digest):
            return '%s/%s@%s' % (self.registry, self.repository, self.ident.value)
        return '%s/%s:%s' % (self.registry, self.repository, self.ident.value)

def _looks_like_registry(component):
    return '.' in component or ':' in component or component == 'localhost'

def parse(s: str) -> Reference:
    """
    Parse an image name.

    Names without a registry refer to the Docker Hub, where single component
    repositories live under ``library/``. Names without a tag or digest refer
    to the ``latest`` tag. When both a tag and a digest are given, the digest
    wins.

    :param s: Image name, e.g. ``gcr.io/proj/img:tag``, ``ubuntu`` or ``localhost:5000/img@sha256:...``.

    :returns: Parsed reference.
    """
    if not s:
        raise exceptions.ParseError(s, 'empty name')

    name, at, digest = s.partition('@')
    if at and not _digest_re.match(digest):
        raise exceptions.ParseError(s, 'invalid digest')

    tag = None
    colon = name.rfind(':')
    if colon > name.rfind('/'):
        name, tag = name[:colon], name[colon + 1:]
        if not _tag_re.match(tag):
            raise exceptions.ParseError(s, 'invalid tag')

    first, slash, rest = name.partition('/')
    if slash and _looks_like_registry(first):
        if not _domain_re.match(first):
            raise exceptions.ParseError(s, 'invalid registry')
        registry, repository = first, rest
    else:
        registry, repository = DEFAULT_REGISTRY, name

    if not repository or not all(_component_re.match(c) for c in repository.split('/')):
        raise exceptions.ParseError(s, 'invalid repository')

    if registry in _legacy_registries:
        registry = DEFAULT_REGISTRY
        if '/' not in repository:
            repository = 'library/' + repository

    if at:
        return Reference(registry, repository, Digest(digest))
    return Reference(registry, repository, Tag(tag or DEFAULT_TAG))
