import os
import re
import json
import hashlib
from functools import wraps
from urllib.parse import urlsplit, parse_qs
import pytest
import responses
import yaml
import imgrebase

# pylint: disable=redefined-outer-name

_here = os.path.join(os.path.dirname(__file__))
_responses_dir = os.path.join(_here, 'responses')

_schema2_mimetype = 'application/vnd.docker.distribution.manifest.v2+json'
_config_mimetype = 'application/vnd.docker.container.image.v1+json'
_layer_mimetype = 'application/vnd.docker.image.rootfs.diff.tar.gzip'

def blob_hash(content):
    return 'sha256:' + hashlib.sha256(content).hexdigest()

def to_json(doc):
    return json.dumps(doc, separators=(',', ':')).encode('utf-8')

def make_config(diff_ids, history, labels=None, **extra):
    doc = dict(extra)
    doc['rootfs'] = {'type': 'layers', 'diff_ids': list(diff_ids)}
    doc['history'] = list(history)
    if labels is not None:
        doc['config'] = {'Labels': dict(labels)}
    return doc

def make_manifest(config_content, layers):
    return {
        'schemaVersion': 2,
        'mediaType': _schema2_mimetype,
        'config': {
            'mediaType': _config_mimetype,
            'size': len(config_content),
            'digest': blob_hash(config_content)
        },
        'layers': [{
            'mediaType': _layer_mimetype,
            'size': len(layer),
            'digest': blob_hash(layer)
        } for layer in layers]
    }

def pytest_configure(config):
    # pylint: disable=unused-argument
    setattr(pytest, 'registry', 'registry.example')
    setattr(pytest, 'other_registry', 'other.example:5000')
    setattr(pytest, 'blob_hash', blob_hash)
    for name in 'abcdxyz':
        setattr(pytest, 'layer_' + name, ('layer ' + name).encode('utf-8'))
        setattr(pytest, 'diff_' + name, blob_hash(('diff ' + name).encode('utf-8')))
        setattr(pytest, 'history_' + name, {'created_by': 'RUN step ' + name})

class FakeRegistry(object):
    """
    Registry API served through responses callbacks. Records mounts,
    uploads and pushed manifests.
    """
    # pylint: disable=too-many-instance-attributes
    def __init__(self, rsps, host, scheme='https'):
        self.rsps = rsps
        self.host = host
        self.blobs = {}
        self.manifests = {}
        self.declined_mounts = set()
        self.mounted = []
        self.uploaded = {}
        self.pushed = {}
        self.manifest_status = 201
        base = re.escape('%s://%s/v2/' % (scheme, host))
        rsps.add_callback(responses.GET, re.compile(base + r'(.+)/manifests/([^/?]+)$'),
                          callback=self._get_manifest)
        rsps.add_callback(responses.PUT, re.compile(base + r'(.+)/manifests/([^/?]+)$'),
                          callback=self._put_manifest)
        rsps.add_callback(responses.GET, re.compile(base + r'(.+)/blobs/(sha256:[0-9a-f]+)$'),
                          callback=self._get_blob)
        rsps.add_callback(responses.POST, re.compile(base + r'(.+)/blobs/uploads/'),
                          callback=self._post_upload)

    @staticmethod
    def _match(request, suffix):
        path = urlsplit(request.url).path
        m = re.match(r'^/v2/(.+)/' + suffix, path)
        return m.groups()

    def add_blob(self, repo, content):
        dgst = blob_hash(content)
        self.blobs[(repo, dgst)] = content
        return dgst

    def add_image(self, repo, tag, layers, config):
        config_content = to_json(config)
        self.add_blob(repo, config_content)
        for layer in layers:
            self.add_blob(repo, layer)
        content = to_json(make_manifest(config_content, layers))
        dgst = blob_hash(content)
        self.manifests[(repo, dgst)] = content
        if tag is not None:
            self.manifests[(repo, tag)] = content
        return dgst

    def _get_manifest(self, request):
        repo, ref = self._match(request, r'manifests/([^/]+)$')
        content = self.manifests.get((repo, ref))
        if content is None:
            return (404, {}, '{"errors":[{"code":"MANIFEST_UNKNOWN"}]}')
        return (200, {'Docker-Content-Digest': blob_hash(content),
                      'Content-Type': _schema2_mimetype}, content)

    def _put_manifest(self, request):
        repo, ref = self._match(request, r'manifests/([^/]+)$')
        body = request.body
        self.pushed[(repo, ref)] = json.loads(body)
        self.manifests[(repo, ref)] = body
        return (self.manifest_status, {'Docker-Content-Digest': blob_hash(body)}, '')

    def _get_blob(self, request):
        repo, dgst = self._match(request, r'blobs/([^/]+)$')
        content = self.blobs.get((repo, dgst))
        if content is None:
            return (404, {}, '{"errors":[{"code":"BLOB_UNKNOWN"}]}')
        return (200, {}, content)

    def _post_upload(self, request):
        repo, = self._match(request, r'blobs/uploads/$')
        query = parse_qs(urlsplit(request.url).query)
        if 'mount' in query:
            dgst = query['mount'][0]
            source = query['from'][0]
            if dgst in self.declined_mounts or (source, dgst) not in self.blobs:
                return (202, {'Location': '/v2/%s/blobs/uploads/1234' % repo}, '')
            self.blobs[(repo, dgst)] = self.blobs[(source, dgst)]
            self.mounted.append((repo, dgst, source))
            return (201, {'Docker-Content-Digest': dgst}, '')
        dgst = query['digest'][0]
        body = request.body
        if hasattr(body, 'read'):
            body = body.read()
        if body is None:
            body = b''
        if blob_hash(body) != dgst:
            return (400, {}, '{"errors":[{"code":"DIGEST_INVALID"}]}')
        self.blobs[(repo, dgst)] = body
        self.uploaded[(repo, dgst)] = body
        return (201, {'Docker-Content-Digest': dgst}, '')

@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as r:
        yield r

@pytest.fixture
def fake_registry(rsps):
    return FakeRegistry(rsps, pytest.registry)

@pytest.fixture
def no_docker_config(tmp_path):
    return str(tmp_path / 'no-such-dir' / 'config.json')

@pytest.fixture
def client(no_docker_config):
    session = imgrebase.new_session(imgrebase.AuthTransport(config_path=no_docker_config))
    with imgrebase.RegistryClient(session) as c:
        yield c

def replay(f):
    path = os.path.join(_responses_dir, f.__name__ + '.yaml')
    @wraps(f)
    def wrapper(*args, **kwargs):
        with open(path, 'r', encoding='utf8') as file:
            data = yaml.load(file, Loader=yaml.SafeLoader)
        for rsp in data["responses"]:
            rsp = rsp["response"]
            rsp["headers"].pop("content-type", None)
            responses.add(
                method=rsp["method"],
                url=rsp["url"],
                body=rsp["body"],
                status=rsp["status"],
                content_type=rsp["content_type"],
                auto_calculate_content_length=rsp["auto_calculate_content_length"],
                headers=rsp["headers"]
            )
        return f(*args, **kwargs)
    return responses.activate(wrapper)

@pytest.fixture
def imgrebase_main(tmp_path):
    return {
        'DOCKER_CONFIG': str(tmp_path / 'docker'),
        'IMGREBASE_JOBS': '2'
    }
