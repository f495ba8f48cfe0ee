import requests

class RebaseError(Exception):
    # Name of the rebase stage which failed, set by the engine
    stage = None

class ParseError(RebaseError):
    def __init__(self, name, reason):
        super(ParseError, self).__init__(name, reason)
        self.name = name
        self.reason = reason

    def __str__(self):
        return 'invalid image reference %r: %s' % (self.name, self.reason)

class ConfigError(RebaseError):
    def __init__(self, path, reason):
        super(ConfigError, self).__init__(path, reason)
        self.path = path
        self.reason = reason

    def __str__(self):
        return 'error reading %s: %s' % (self.path, self.reason)

class HelperError(RebaseError):
    def __init__(self, helper, reason):
        super(HelperError, self).__init__(helper, reason)
        self.helper = helper
        self.reason = reason

    def __str__(self):
        return 'error invoking credential helper %r: %s' % (self.helper, self.reason)

class HTTPError(RebaseError, requests.exceptions.HTTPError):
    def __init__(self, response):
        super(HTTPError, self).__init__(response=response)

    @property
    def status_code(self):
        return self.response.status_code

    def __str__(self):
        r = self.response
        return 'HTTP error %d for %s %s\n%s' % (r.status_code,
                                                r.request.method if r.request is not None else '?',
                                                r.url,
                                                r.text)

class TransportError(RebaseError):
    def __init__(self, cause):
        super(TransportError, self).__init__(cause)
        self.cause = cause

    def __str__(self):
        return 'error talking to registry: %s' % self.cause

class LabelError(RebaseError):
    pass

class PreconditionError(RebaseError):
    pass

class ManifestError(RebaseError):
    pass

class BasisMismatchError(RebaseError):
    def __init__(self, original, old_base):
        super(BasisMismatchError, self).__init__(original, old_base)
        self.original = original
        self.old_base = old_base

    def __str__(self):
        return '%s is not based on %s' % (self.original, self.old_base)

class DigestMismatchError(RebaseError):
    def __init__(self, got, expected):
        super(DigestMismatchError, self).__init__(got, expected)
        self.got = got
        self.expected = expected

    def __str__(self):
        return 'expected digest %s, got %s' % (self.expected, self.got)
