'''
WSGI SPNEGO Authentication Middleware

Add Kerberos/GSSAPI Negotiate Authentication support to any WSGI Application,
accepting tickets with an explicitly configured service principal and keytab.
'''
import base64
import binascii
import errno
import logging
import os
from collections import namedtuple

import gssapi

__version__ = '1.0.0'

_DEFAULT_READ_MAX = int(1e8)  # 100 MB
_CHUNK_SIZE = 1024 * 64       # Match Werkzeug: https://git.io/JtTiR
_LOG = logging.getLogger(__name__)

_SCHEME = 'negotiate '

# Quoting https://specs.openstack.org/openstack/api-wg/guidelines/http/methods.html:
# HTTP request bodies are theoretically allowed for all methods except TRACE,
# however they are not commonly used except in PUT, POST and PATCH. Because of
# this, they may not be supported properly by some client frameworks, and you
# should not allow request bodies for GET, DELETE, TRACE, OPTIONS and HEAD methods.
_NEVER_READ_METHODS = frozenset({'GET', 'DELETE', 'TRACE', 'OPTIONS', 'HEAD'})

# Reasons carried by Rejected results. Never sent to the client.
MISCONFIGURED = 'misconfigured'
NO_HEADER = 'no-header'
MALFORMED = 'malformed'
NEGOTIATION_FAILED = 'negotiation-failed'
OPERATIONAL_FAILURE = 'operational-failure'
NO_OUTPUT_TOKEN = 'no-output-token'
NO_IDENTITY = 'no-identity'

_TRUE_STRINGS = frozenset({'true', 'yes', 'on', '1'})
_FALSE_STRINGS = frozenset({'false', 'no', 'off', '0', ''})


class EngineError(Exception):
    '''
    The security context engine failed for a server-side reason.
    '''


class LoginError(EngineError):
    '''
    The service identity could not be logged in from its keytab.
    '''


class ContextError(EngineError):
    '''
    The client token was rejected while advancing the security context.
    '''


class Rejected(namedtuple('Rejected', 'reason')):
    '''
    Terminal failure; no identity. ``reason`` is for logs and tests only.
    '''
    __slots__ = ()
    authenticated = False


class Incomplete(namedtuple('Incomplete', 'token')):
    '''
    Negotiation needs another round trip; ``token`` must be sent back to
    the client in a ``WWW-Authenticate: Negotiate`` challenge.
    '''
    __slots__ = ()
    authenticated = False


class Authenticated(namedtuple('Authenticated', 'username token')):
    '''
    Negotiation completed. ``token`` (possibly None) completes mutual
    authentication on the client.
    '''
    __slots__ = ()
    authenticated = True


def resolve_username(raw_name, strip_realm=True):
    '''
    Return ``raw_name`` with its realm removed when ``strip_realm`` is set.

    A leading ``@`` is kept so that the result is never empty.
    '''
    if strip_realm and raw_name:
        i = raw_name.find('@')
        if i > 0:
            return raw_name[:i]
    return raw_name


class Principal(namedtuple('Principal', 'raw_name stripped_name')):
    __slots__ = ()

    @classmethod
    def from_raw(cls, raw_name, strip_realm=True):
        return cls(raw_name, resolve_username(raw_name, strip_realm))


def _resolve_path(path, config_dir=None):
    if os.path.isabs(path):
        return path
    return os.path.abspath(os.path.join(config_dir or os.getcwd(), path))


def _as_bool(value, default):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError(f'Not a boolean setting value: {value!r}')


class AcceptorIdentity(namedtuple('AcceptorIdentity', 'principal keytab valid')):
    '''
    The service principal and keytab used to accept client tickets.

    Build it once with :meth:`load`; an invalid identity makes every
    negotiation fail without touching the security context engine.
    '''
    __slots__ = ()

    @classmethod
    def load(cls, principal, keytab, config_dir=None, logger=_LOG):
        '''
        Validate the acceptor configuration.

        :param principal: acceptor service principal, e.g. ``HTTP/host@REALM``
        :type principal: str
        :param keytab: keytab file path, relative paths are resolved against
            ``config_dir`` (or the current directory)
        :type keytab: str
        :param config_dir: configuration directory
        :type config_dir: str
        :param logger: logging provider
        :type logger: logging.Logger
        '''
        valid = True
        if not principal:
            logger.error('acceptor_principal must not be null or empty. '
                         'Kerberos authentication will not work')
            principal = None
            valid = False

        if not keytab:
            logger.error('acceptor_keytab_filepath must not be null or empty. '
                         'Kerberos authentication will not work')
            keytab = None
            valid = False
        else:
            keytab = _resolve_path(os.fspath(keytab), config_dir)
            if not os.path.isfile(keytab) or not os.access(keytab, os.R_OK):
                logger.error('Unable to read keytab from %s - Maybe the file does not '
                             'exist or is not readable. Kerberos authentication will not work',
                             keytab)
                valid = False

        logger.debug('acceptor_principal %s', principal)
        logger.debug('acceptor_keytab_filepath %s', keytab)
        return cls(principal, keytab, valid)


_ServiceLogin = namedtuple('_ServiceLogin', 'name store')


class GSSAPIEngine:
    '''
    Security context engine backed by python-gssapi.

    Library wide options are applied once, when the engine is created. Every
    handle it returns belongs to a single negotiation attempt.

    :param krb5_config: path of the krb5.conf to use instead of the system one
    :type krb5_config: str
    :param debug: enable the Kerberos library trace on stderr
    :type debug: bool
    :param logger: logging provider
    :type logger: logging.Logger
    '''

    def __init__(self, krb5_config=None, debug=False, logger=_LOG):
        self.krb5_config = krb5_config
        self.debug = debug
        self.logger = logger

        if krb5_config:
            os.environ['KRB5_CONFIG'] = krb5_config
            self.logger.debug('krb5_filepath: %s', krb5_config)
        if debug:
            os.environ.setdefault('KRB5_TRACE', '/dev/stderr')
            self.logger.info('Kerberos debug is enabled on stderr')
        else:
            self.logger.debug('Kerberos debug is NOT enabled')

    def login(self, principal, keytab):
        if not os.access(keytab, os.R_OK):
            raise LoginError(f'Unable to read keytab {keytab}')
        try:
            name = gssapi.Name(principal, gssapi.NameType.kerberos_principal)
        except gssapi.exceptions.GSSError as exc:
            raise LoginError(f'Invalid acceptor principal {principal}: {exc}') from exc
        return _ServiceLogin(name, {'keytab': keytab})

    def create_accept_credential(self, login):
        try:
            return gssapi.Credentials(name=login.name, lifetime=None,
                                      usage='accept', store=login.store)
        except gssapi.exceptions.GSSError as exc:
            raise LoginError(f'Service login for {login.name} failed: {exc}') from exc

    def create_context(self, credential):
        try:
            return gssapi.SecurityContext(creds=credential, usage='accept')
        except gssapi.exceptions.GSSError as exc:
            raise EngineError(f'Unable to create security context: {exc}') from exc

    def accept_token(self, context, token):
        try:
            out_token = context.step(token)
        except gssapi.exceptions.GSSError as exc:
            raise ContextError(str(exc)) from exc
        return out_token, context.complete

    def source_name(self, context):
        try:
            name = context.initiator_name
        except gssapi.exceptions.GSSError as exc:
            raise EngineError(f'Unable to get src name from gss context: {exc}') from exc
        return str(name) if name is not None else None

    def dispose(self, context):
        try:
            gssapi.raw.delete_sec_context(context)
        except gssapi.exceptions.GSSError as exc:
            self.logger.debug('Ignoring failure to dispose security context: %s', exc)


class SPNEGOAuthenticator:
    '''
    Performs one SPNEGO negotiation step per request.

    :param identity: acceptor principal and keytab
    :type identity: AcceptorIdentity
    :param engine: security context engine, defaults to :class:`GSSAPIEngine`
    :param strip_realm: remove ``@REALM`` from authenticated user names
    :type strip_realm: bool
    :param logger: logging provider
    :type logger: logging.Logger
    '''

    def __init__(self, identity, engine=None, strip_realm=True, logger=_LOG):
        self.identity = identity
        self.engine = engine if engine is not None else GSSAPIEngine(logger=logger)
        self.strip_realm = strip_realm
        self.logger = logger
        self.logger.debug('strip_realm_from_principal %s', strip_realm)

    @classmethod
    def from_settings(cls, settings, config_dir=None, engine=None, logger=_LOG):
        '''
        Build an authenticator from a settings mapping.

        Recognised keys are ``acceptor_principal``,
        ``acceptor_keytab_filepath``, ``strip_realm_from_principal``,
        ``krb_debug`` and ``krb5_filepath``.
        '''
        identity = AcceptorIdentity.load(
            settings.get('acceptor_principal'),
            settings.get('acceptor_keytab_filepath'),
            config_dir=config_dir,
            logger=logger,
        )
        if engine is None:
            krb5_config = settings.get('krb5_filepath')
            if krb5_config:
                krb5_config = _resolve_path(krb5_config, config_dir)
            engine = GSSAPIEngine(
                krb5_config=krb5_config,
                debug=_as_bool(settings.get('krb_debug'), False),
                logger=logger,
            )
        return cls(
            identity,
            engine=engine,
            strip_realm=_as_bool(settings.get('strip_realm_from_principal'), True),
            logger=logger,
        )

    def _parse_token(self, authorization):
        header = authorization.strip()
        if header[:len(_SCHEME)].lower() != _SCHEME:
            self.logger.info("Authorization header did not start with 'negotiate'")
            return None
        try:
            token = base64.b64decode(header[len(_SCHEME):].strip(), validate=True)
        except (binascii.Error, ValueError):
            self.logger.info('Negotiate token is not valid base64')
            return None
        if not token:
            self.logger.info('Negotiate token is empty')
            return None
        return token

    def extract_credentials(self, authorization):
        '''
        Validate the ``Authorization`` header value of a request.

        Always returns a :class:`Rejected`, :class:`Incomplete` or
        :class:`Authenticated` result; failures are logged, never raised.
        '''
        if not self.identity.valid:
            self.logger.error('Missing acceptor principal or keytab configuration. '
                              'Kerberos authentication will not work')
            return Rejected(MISCONFIGURED)

        if authorization is None:
            self.logger.debug("No 'Authorization' header, send 401 and 'WWW-Authenticate: Negotiate'")
            return Rejected(NO_HEADER)

        client_token = self._parse_token(authorization)
        if client_token is None:
            return Rejected(MALFORMED)
        self.logger.debug('Received a %d byte negotiation token', len(client_token))

        engine = self.engine
        try:
            login = engine.login(self.identity.principal, self.identity.keytab)
            credential = engine.create_accept_credential(login)
            context = engine.create_context(credential)
        except EngineError as exc:
            self.logger.error('Service login not successful due to %s', exc)
            return Rejected(OPERATIONAL_FAILURE)
        except Exception:
            self.logger.exception('Service login not successful')
            return Rejected(OPERATIONAL_FAILURE)

        try:
            return self._step(context, client_token)
        finally:
            self._dispose(context)

    def _step(self, context, client_token):
        try:
            server_token, established = self.engine.accept_token(context, client_token)
        except ContextError as exc:
            self.logger.warning('Ticket validation not successful due to %s', exc)
            return Rejected(NEGOTIATION_FAILED)
        except Exception:
            self.logger.exception('Ticket validation failed unexpectedly')
            return Rejected(OPERATIONAL_FAILURE)

        if not server_token:
            self.logger.warning('Ticket validation not successful, output token is empty')
            return Rejected(NO_OUTPUT_TOKEN)

        if not established:
            self.logger.debug('Security context not established yet, continuing negotiation')
            return Incomplete(server_token)

        try:
            raw_name = self.engine.source_name(context)
        except Exception as exc:
            self.logger.error('Unable to get src name from gss context: %s', exc)
            raw_name = None

        if not raw_name:
            self.logger.error('Got empty or null user from kerberos. Normally this means that '
                              'your acceptor principal %s does not match the server hostname',
                              self.identity.principal)
            return Rejected(NO_IDENTITY)

        principal = Principal.from_raw(raw_name, self.strip_realm)
        self.logger.debug('Authenticated %s as %s', principal.raw_name, principal.stripped_name)
        return Authenticated(principal.stripped_name, server_token)

    def _dispose(self, context):
        try:
            self.engine.dispose(context)
        except Exception as exc:
            self.logger.debug('Ignoring failure to dispose security context: %s', exc)


def extract_credentials(authorization, identity, engine=None, strip_realm=True, logger=_LOG):
    '''
    Run a single negotiation step, see :meth:`SPNEGOAuthenticator.extract_credentials`.
    '''
    authenticator = SPNEGOAuthenticator(identity, engine=engine,
                                        strip_realm=strip_realm, logger=logger)
    return authenticator.extract_credentials(authorization)


def negotiate_header(token=None):
    '''
    Return a ``WWW-Authenticate`` value, with ``token`` base64 encoded if given.
    '''
    if not token:
        return 'Negotiate'
    return 'Negotiate ' + base64.b64encode(token).decode()


def build_challenge(result=None, unauthorized=(b"Unauthorized", "text/plain")):
    '''
    Build the 401 response asking the client to (re)negotiate.

    Only an :class:`Incomplete` result puts a token in the challenge.

    :returns: status line, header list and body
    :rtype: tuple
    '''
    token = result.token if isinstance(result, Incomplete) else None
    headers = [
        ('content-type', unauthorized[1]),
        ('content-length', str(len(unauthorized[0]))),
        ('WWW-Authenticate', negotiate_header(token)),
    ]
    return '401 Unauthorized', headers, unauthorized[0]


class SPNEGOAuthMiddleware:
    '''
    WSGI Middleware providing SPNEGO Authentication

    :param app: WSGI Application
    :param principal: acceptor service principal, e.g. ``HTTP/host@REALM``
    :type principal: str
    :param keytab: keytab holding the acceptor principal's keys
    :type keytab: str
    :param strip_realm: remove ``@REALM`` from ``REMOTE_USER``
    :type strip_realm: bool
    :param config_dir: directory relative keytab paths are resolved against
    :type config_dir: str
    :param authenticator: prebuilt authenticator, overrides the four
        parameters above
    :type authenticator: SPNEGOAuthenticator
    :param unauthorized: 401 Response text or text/content-type tuple
    :type unauthorized: tuple
    :param auth_required_callback: predicate accepting the WSGI environ
        for a request returning whether the request should be authenticated
    :type auth_required_callback: callable
    :param read_max_on_auth_fail: When a request could not be authenticated,
        read and discard up to this many bytes of the request. This may help
        naively-written clients that send large request bodies which they
        expect to be consumed before first confirming that the request was
        authenticated successfully. Pass 0 to disable this if you don't want to
        waste resources to potentially accommodate such clients. Pass float('inf')
        to read an unlimited number of bytes. Beware that the more the server
        is willing to read, the more vulnerable it becomes to denial-of-service
        attacks.
    :type read_max_on_auth_fail: int
    :param logger: logging provider
    :type logger: logging.Logger
    '''

    def __init__(
        self,
        app,
        principal=None,
        keytab=None,
        strip_realm=True,
        config_dir=None,
        authenticator=None,
        unauthorized=(b"Unauthorized", "text/plain"),
        auth_required_callback=lambda _: True,
        read_max_on_auth_fail=_DEFAULT_READ_MAX,
        logger=_LOG,
    ):
        self.application = app               # WSGI Application
        self.unauthorized = unauthorized     # 401 response text/content-type
        self.auth_required_callback = auth_required_callback
        self.read_max_on_auth_fail = read_max_on_auth_fail
        self.logger = logger

        if authenticator is None:
            identity = AcceptorIdentity.load(principal, keytab, config_dir=config_dir, logger=logger)
            authenticator = SPNEGOAuthenticator(identity, strip_realm=strip_realm, logger=logger)
        self.authenticator = authenticator
        if self.authenticator.identity.valid:
            self.logger.info('SPNEGOAuthMiddleware is identifying as %s',
                             self.authenticator.identity.principal)

    @classmethod
    def from_settings(cls, app, settings, config_dir=None, engine=None, **kwargs):
        '''
        Create the middleware from a settings mapping, see
        :meth:`SPNEGOAuthenticator.from_settings`.
        '''
        logger = kwargs.get('logger', _LOG)
        authenticator = SPNEGOAuthenticator.from_settings(
            settings, config_dir=config_dir, engine=engine, logger=logger)
        return cls(app, authenticator=authenticator, **kwargs)

    def _unauthorized(self, environ, start_response, result=None):
        '''
        Send a 401 Unauthorized response
        '''
        status, headers, body = build_challenge(result, self.unauthorized)
        self._consume_request(environ)
        start_response(status, headers)
        return [body]

    def _consume_request(self, environ, chunk_size=_CHUNK_SIZE):
        """
        Consume and discard up to *read_max_on_auth_fail* bytes of the request.

        This avoids problems that some clients have when the server does not
        download the entire request body before sending the response, such as
        for requests that could not be authenticated.

        RFC2616: If an origin server receives a request that does not include an
        Expect request-header field with the "100-continue" expectation, the
        request includes a request body, and the server responds with a final
        status code before reading the entire request body from the transport
        connection, then the server SHOULD NOT CLOSE the transport connection until
        it has read the entire request, or until the client closes the connection.
        """
        if self.read_max_on_auth_fail == 0:
            return
        if environ["REQUEST_METHOD"] in _NEVER_READ_METHODS:
            return
        if environ.get("HTTP_EXPECT") == "100-continue":
            return
        try:
            body = environ.get("wsgi.input")
            if hasattr(body, "closed") and body.closed:
                return

            content_length = environ.get("CONTENT_LENGTH", "")
            if not content_length:
                self.logger.info("No Content-Length -> skipping _consume_request")
                return
            content_length = int(content_length)
            if content_length > self.read_max_on_auth_fail:
                # Reading anything less than the whole body does not help.
                self.logger.warning(
                    "Content-Length (%d) exceeds read_max_on_auth_fail (%s) -> not consuming"
                    " request body; client may get a connection error. Enabling"
                    " preemptive authentication on the client may avoid this."
                    " You can also pass a higher value of `read_max_on_auth_fail`"
                    " to SPNEGOAuthMiddleware.",
                    content_length,
                    self.read_max_on_auth_fail,
                )
                return
            # Keep reading until an error we can't retry. The client will just
            # have to deal with a possible Broken Pipe -- we tried.
            remaining = content_length
            while remaining > 0:
                to_read = min(chunk_size, remaining)
                try:
                    read = len(body.read(to_read))
                except OSError as err:
                    if err.errno != errno.EAGAIN:
                        raise
                else:
                    if read != to_read:
                        break
                    remaining -= read
        except Exception as exc:
            self.logger.info("_consume_request suppressed: %s", exc)

    def __call__(self, environ, start_response):
        '''
        Authenticate the client, and on success invoke the WSGI application.
        Include a token in the response headers that can be used to
        authenticate the server to the client.
        '''
        # Even when auth is not required, a client that authenticates anyway
        # still gets its REMOTE_USER.
        auth_required = self.auth_required_callback(environ)

        result = self.authenticator.extract_credentials(environ.get('HTTP_AUTHORIZATION'))

        if result.authenticated:
            environ['REMOTE_USER'] = result.username
            if not result.token:
                return self.application(environ, start_response)

            server_header = negotiate_header(result.token)

            def custom_start_response(status, headers, exc_info=None):
                headers.append(('WWW-Authenticate', server_header))
                return start_response(status, headers, exc_info)
            return self.application(environ, custom_start_response)

        if auth_required:
            return self._unauthorized(environ, start_response, result)
        return self.application(environ, start_response)
