"""
Transport adapter which supplies Docker registry credentials to outgoing
requests.

Credentials come from the Docker client's ``config.json``: credential helpers
named in ``credHelpers``, static ``auths`` entries, or the global ``credsStore``
helper for hosts ``docker login`` recorded there. Requests which go out without
credentials and are challenged with a Bearer ``WWW-Authenticate`` header get a
token from the challenge's realm and are retried once.
"""

from typing import Callable, Dict, Optional, Mapping
import base64
import json
import logging
import os
import subprocess
import threading

import urllib.parse as urlparse
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from requests.utils import rewind_body
import www_authenticate # type: ignore

from imgrebase import exceptions

logger = logging.getLogger(__name__)

# Key formats registries have been recorded under in config.json
_host_formats = (
    # naked domain
    '%s',
    # scheme-prefixed
    'http://%s',
    'https://%s',
    # scheme-prefixed with version in URL path
    'http://%s/v1/',
    'https://%s/v1/',
    'http://%s/v2/',
    'https://%s/v2/',
)

def docker_config_path(environ: Optional[Mapping[str, str]]=None) -> str:
    """
    Location of the Docker client's ``config.json``.

    :param environ: Environment to read ``DOCKER_CONFIG`` and ``HOME`` from. Defaults to ``os.environ``.
    """
    if environ is None:
        environ = os.environ
    directory = environ.get('DOCKER_CONFIG')
    if not directory:
        directory = os.path.join(environ.get('HOME') or os.path.expanduser('~'), '.docker')
    return os.path.join(directory, 'config.json')

def load_docker_config(path: str) -> Dict:
    """
    Read a Docker client ``config.json``. A missing file yields an empty
    configuration.
    """
    try:
        with open(path, 'r', encoding='utf8') as f:
            config = json.load(f)
    except FileNotFoundError:
        logger.debug('no credential store at %s', path)
        return {}
    except (OSError, ValueError) as ex:
        raise exceptions.ConfigError(path, ex) from ex
    if not isinstance(config, dict):
        raise exceptions.ConfigError(path, 'not a JSON object')
    for key in ('credHelpers', 'auths'):
        if not isinstance(config.get(key) or {}, dict):
            raise exceptions.ConfigError(path, '%s is not a JSON object' % key)
    for host, entry in (config.get('auths') or {}).items():
        if not isinstance(entry, dict):
            raise exceptions.ConfigError(path, 'auths entry for %s is not a JSON object' % host)
    return config

def _field(output, name):
    # Helpers write Username/Secret, Go's decoder doesn't care about case
    value = output.get(name)
    if value is None:
        value = output.get(name.lower())
    return value

def invoke_helper(helper: str, server_url: str) -> str:
    """
    Run ``docker-credential-<helper> get`` for a server.

    :param helper: Helper name, as found in ``config.json``.

    :param server_url: Server URL written to the helper's standard input.

    :returns: Base64-encoded ``username:secret`` for HTTP Basic auth.
    """
    cmd = ['docker-credential-' + helper, 'get']
    try:
        proc = subprocess.run(cmd,
                              input=server_url.encode('utf-8'),
                              stdout=subprocess.PIPE,
                              stderr=subprocess.PIPE,
                              check=False)
    except OSError as ex:
        raise exceptions.HelperError(helper, ex) from ex
    if proc.returncode != 0:
        message = (proc.stderr or proc.stdout).decode('utf-8', 'replace').strip()
        raise exceptions.HelperError(helper, 'exit status %d: %s' % (proc.returncode, message))
    try:
        output = json.loads(proc.stdout.decode('utf-8'))
    except ValueError as ex:
        raise exceptions.HelperError(helper, 'malformed output: %s' % ex) from ex
    if not isinstance(output, dict):
        raise exceptions.HelperError(helper, 'malformed output: not a JSON object')
    username = _field(output, 'Username')
    secret = _field(output, 'Secret')
    if username is None or secret is None:
        raise exceptions.HelperError(helper, 'output lacks username or secret')
    return base64.b64encode((username + ':' + secret).encode('utf-8')).decode('utf-8')

class CredentialCache(object):
    """
    Basic auth credentials per registry host. Safe to share between threads.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._auths: Dict[str, str] = {}

    def get(self, host: str) -> Optional[str]:
        with self._lock:
            return self._auths.get(host)

    def set(self, host: str, auth: str):
        with self._lock:
            self._auths[host] = auth

    def evict(self, host: str):
        with self._lock:
            self._auths.pop(host, None)

    def __contains__(self, host):
        with self._lock:
            return host in self._auths

def parse_challenge(value: Optional[str]) -> Optional[Dict[str, Optional[str]]]:
    """
    Extract the Bearer challenge from a ``WWW-Authenticate`` header value.

    :returns: Dictionary with ``realm``, ``service`` and ``scope`` keys, or ``None`` if there is no Bearer challenge with a realm.
    """
    if not value:
        return None
    try:
        parsed = www_authenticate.parse(value)
    except ValueError:
        logger.debug('unparseable challenge: %s', value)
        return None
    if 'bearer' not in parsed:
        return None
    info = parsed['bearer']
    if not isinstance(info, dict) or 'realm' not in info or not info['realm']:
        return None
    return {
        'realm': info['realm'],
        'service': info['service'] if 'service' in info else None,
        'scope': info['scope'] if 'scope' in info else None
    }

def token_url(challenge: Dict[str, Optional[str]]) -> str:
    url_parts = list(urlparse.urlparse(challenge['realm']))
    query = urlparse.parse_qsl(url_parts[4])
    if challenge.get('service'):
        query.append(('service', challenge['service']))
    query.extend(('scope', s) for s in (challenge.get('scope') or '').split())
    url_parts[4] = urlencode(query, True)
    return urlparse.urlunparse(url_parts)

class AuthTransport(HTTPAdapter):
    """
    `requests` transport adapter which adds registry credentials to each
    request it sends.

    A request which already carries an ``Authorization`` header is sent
    unchanged. Otherwise cached Basic credentials for the host are used,
    then credentials from ``config.json``. Basic credentials are cached per
    host for the life of the adapter; Bearer tokens are obtained afresh for
    every challenged request.
    """
    def __init__(self,
            cache: Optional[CredentialCache]=None,
            helper: Optional[Callable[[str, str], str]]=None,
            config_path: Optional[str]=None,
            environ: Optional[Mapping[str, str]]=None,
            **kwargs):
        """
        :param cache: Credential cache. A new one is made if not given.

        :param helper: Function called with a helper name and server URL which returns base64-encoded Basic credentials. Defaults to :func:`invoke_helper`.

        :param config_path: Path to ``config.json``. Defaults to :func:`docker_config_path`.

        :param environ: Environment used to find ``config.json`` when ``config_path`` isn't given.

        Other keyword arguments are passed to :class:`requests.adapters.HTTPAdapter`.
        """
        super(AuthTransport, self).__init__(**kwargs)
        self._cache = CredentialCache() if cache is None else cache
        self._helper = invoke_helper if helper is None else helper
        self._config_path = config_path
        self._environ = environ

    @property
    def cache(self) -> CredentialCache:
        return self._cache

    def _find_basic(self, host):
        path = self._config_path or docker_config_path(self._environ)
        config = load_docker_config(path)
        keys = [f % host for f in _host_formats]
        server_url = 'https://' + host

        helpers = config.get('credHelpers') or {}
        for key in keys:
            if key in helpers:
                logger.debug('using credential helper %s for %s', helpers[key], host)
                return self._helper(helpers[key], server_url)

        auths = config.get('auths') or {}
        for key in keys:
            if key not in auths:
                continue
            if auths[key].get('auth'):
                logger.debug('using stored credentials for %s', host)
                return auths[key]['auth']
            if config.get('credsStore'):
                logger.debug('using credential store %s for %s', config['credsStore'], host)
                return self._helper(config['credsStore'], server_url)

        return None

    def _get_token(self, challenge, basic, kwargs):
        headers = {'Authorization': 'Basic ' + basic} if basic else {}
        token_request = requests.Request('GET', token_url(challenge), headers=headers).prepare()
        token_kwargs = dict(kwargs)
        token_kwargs['stream'] = False
        r = super(AuthTransport, self).send(token_request, **token_kwargs)
        # pylint: disable=no-member
        if r.status_code != requests.codes.ok:
            raise exceptions.HTTPError(r)
        try:
            rjson = r.json()
        except ValueError as ex:
            raise exceptions.HTTPError(r) from ex
        # Use 'access_token' value if present and not empty, else 'token' value.
        token = rjson.get('access_token') or rjson.get('token') if isinstance(rjson, dict) else None
        if not token:
            raise exceptions.HTTPError(r)
        return token

    def send(self, request, **kwargs):
        # pylint: disable=arguments-differ
        if request.headers.get('Authorization'):
            return super(AuthTransport, self).send(request, **kwargs)

        host = urlparse.urlparse(request.url).netloc
        basic = self._cache.get(host)
        if basic is None:
            basic = self._find_basic(host)
            if basic is not None:
                self._cache.set(host, basic)
        if basic is not None:
            request.headers['Authorization'] = 'Basic ' + basic

        r = super(AuthTransport, self).send(request, **kwargs)
        # pylint: disable=no-member
        if r.status_code != requests.codes.unauthorized:
            return r

        challenge = parse_challenge(r.headers.get('WWW-Authenticate'))
        if challenge is None:
            if basic is not None:
                logger.debug('credentials for %s were rejected, forgetting them', host)
                self._cache.evict(host)
            return r

        logger.debug('%s challenged %s %s, getting token from %s',
                     host, request.method, request.url, challenge['realm'])
        try:
            token = self._get_token(challenge, basic, kwargs)
        except exceptions.HTTPError:
            if basic is not None:
                self._cache.evict(host)
            raise

        # Release the connection before retrying
        r.content # pylint: disable=pointless-statement
        r.close()

        retry = request.copy()
        retry.headers['Authorization'] = 'Bearer ' + token
        # File bodies were consumed by the first attempt
        # pylint: disable=protected-access
        if hasattr(retry.body, 'seek') and \
           isinstance(getattr(retry, '_body_position', None), int):
            rewind_body(retry)
        return super(AuthTransport, self).send(retry, **kwargs)

def new_session(transport: Optional[AuthTransport]=None) -> requests.Session:
    """
    Make a `requests.Session` whose HTTP and HTTPS requests go through an
    :class:`AuthTransport`.
    """
    if transport is None:
        transport = AuthTransport()
    session = requests.Session()
    session.mount('https://', transport)
    session.mount('http://', transport)
    return session
