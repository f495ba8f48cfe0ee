"""
Command line tool for rebasing images in a registry.
"""

import argparse
import errno
import logging
import os
import sys
import threading

import tqdm

import imgrebase
from imgrebase import exceptions

def _flag(environ, name):
    return environ.get(name, '0').lower() not in ('', '0', 'false', 'no')

def _make_parser(environ):
    parser = argparse.ArgumentParser(
        prog='imgrebase',
        description='Replace the base layers of an image in a registry.')
    parser.add_argument('--original', required=True,
                        help='image to rebase')
    parser.add_argument('--old-base',
                        help='base image to remove (read from the rebase label if omitted)')
    parser.add_argument('--new-base',
                        help='base image to replace it with (read from the rebase label if omitted)')
    parser.add_argument('--rebased', required=True,
                        help='tag to push the rebased image to')
    parser.add_argument('--insecure', action='store_true',
                        default=_flag(environ, 'IMGREBASE_INSECURE'),
                        help='use HTTP instead of HTTPS')
    parser.add_argument('--skip-tls-verify', action='store_true',
                        default=_flag(environ, 'IMGREBASE_SKIPTLSVERIFY'),
                        help="don't verify TLS certificates")
    parser.add_argument('--timeout', type=float,
                        default=float(environ['IMGREBASE_TIMEOUT']) if environ.get('IMGREBASE_TIMEOUT') else None,
                        help='request timeout in seconds')
    parser.add_argument('--jobs', type=int,
                        default=int(environ.get('IMGREBASE_JOBS') or 4),
                        help='number of layers to transfer at once')
    parser.add_argument('--progress', action='store_true',
                        default=_flag(environ, 'IMGREBASE_PROGRESS'),
                        help='show progress of copied layers')
    parser.add_argument('-v', '--verbose', action='count', default=0)
    return parser

class _Progress(object):
    def __init__(self):
        self._lock = threading.Lock()
        self._bars = {}

    def __call__(self, dgst, chunk, size):
        with self._lock:
            bar = self._bars.get(dgst)
            if bar is None:
                bar = self._bars[dgst] = tqdm.tqdm(desc=dgst[0:15],
                                                   total=size,
                                                   leave=True,
                                                   unit='B',
                                                   unit_scale=True)
            if chunk:
                bar.update(len(chunk))

    def close(self):
        with self._lock:
            for bar in self._bars.values():
                bar.close()

def _report(ex):
    if ex.stage:
        sys.stderr.write('%s: %s\n' % (ex.stage, ex))
    else:
        sys.stderr.write('%s\n' % ex)

def doit(args, environ):
    parser = _make_parser(environ)
    args = parser.parse_args(args)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level)

    progress = _Progress() if args.progress else None
    client = imgrebase.RegistryClient(imgrebase.new_session(imgrebase.AuthTransport(environ=environ)),
                                      insecure=args.insecure,
                                      tlsverify=not args.skip_tls_verify,
                                      timeout=args.timeout)
    try:
        with client:
            rebased = imgrebase.Rebaser(client, args.jobs).rebase(args.original,
                                                                   args.old_base,
                                                                   args.new_base,
                                                                   args.rebased,
                                                                   progress)
    except (exceptions.ParseError, exceptions.PreconditionError) as ex:
        _report(ex)
        return errno.EINVAL
    except exceptions.HTTPError as ex:
        _report(ex)
        # pylint: disable=no-member
        if ex.status_code in (401, 403):
            return errno.EACCES
        if ex.status_code == 404:
            return errno.ENOENT
        return 1
    except exceptions.RebaseError as ex:
        _report(ex)
        return 1
    finally:
        if progress:
            progress.close()

    print(rebased)
    return 0

def main():
    sys.exit(doit(sys.argv[1:], os.environ))
