#!/usr/bin/env python3

import logging
import os
from wsgi_spnego import SPNEGOAuthMiddleware
from wsgiref.simple_server import make_server


def example(environ, start_response):
    user = environ.get('REMOTE_USER', 'ANONYMOUS')
    start_response('200 OK', [('Content-Type', 'text/plain')])
    data = "Hello {}".format(user)
    return [data.encode()]


settings = {
    'acceptor_principal': os.environ.get('SPNEGO_PRINCIPAL', ''),
    'acceptor_keytab_filepath': os.environ.get('SPNEGO_KEYTAB', 'http.keytab'),
    'strip_realm_from_principal': os.environ.get('SPNEGO_STRIP_REALM', 'true'),
    'krb_debug': os.environ.get('SPNEGO_DEBUG', 'false'),
}

application = SPNEGOAuthMiddleware.from_settings(
    example, settings, config_dir=os.path.dirname(os.path.abspath(__file__)))


if __name__ == '__main__':
    logging.basicConfig(level=logging.DEBUG)
    server = make_server('', 8080, application)
    server.serve_forever()
