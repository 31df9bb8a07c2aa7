import base64
import copy
import os
import shutil
import unittest

import gssapi
import k5test
import requests
import requests_gssapi
from wsgi_intercept import add_wsgi_intercept, remove_wsgi_intercept, requests_intercept

from wsgi_spnego import (
    NEGOTIATION_FAILED,
    AcceptorIdentity,
    Rejected,
    SPNEGOAuthenticator,
    SPNEGOAuthMiddleware,
)

REALM = "EXAMPLE.ORG"
HOSTNAME = REALM.lower()
TEST_PORT = 8888
TEST_URL = f"http://{HOSTNAME}:{TEST_PORT}/"
USER1 = (f"user1@{REALM}", "pass1")
USER2 = (f"user2@{REALM}", "pass2")
HTTP_SERVICE = f"HTTP/{HOSTNAME}@{REALM}"
OTHER_SERVICE = f"HTTP/other.{HOSTNAME}@{REALM}"


def index(environ, start_response):
    start_response("200 OK", [("Content-Type", "text/plain")])
    response_body = f"Hello {environ.get('REMOTE_USER', 'ANONYMOUS')}"
    return [response_body.encode("utf-8")]


class CustomSpnegoAuth(requests_gssapi.HTTPSPNEGOAuth):
    def __init__(self, creds=None):
        super().__init__(
            target_name=gssapi.Name(HTTP_SERVICE).canonicalize(
                gssapi.MechType.kerberos
            ),
            creds=creds,
            opportunistic_auth=True,
        )


@unittest.skipUnless(shutil.which("kdb5_util") or shutil.which("krb5kdc"),
                     "MIT Kerberos KDC tools are not installed")
class RealmTestCase(k5test.KerberosTestCase):
    @classmethod
    def _init_env(cls):
        cls._saved_env = copy.deepcopy(os.environ)
        for k, v in cls.realm.env.items():
            os.environ[k] = v

    @classmethod
    def _restore_env(cls):
        for k in copy.deepcopy(os.environ):
            if k in cls._saved_env:
                os.environ[k] = cls._saved_env[k]
            else:
                del os.environ[k]

        cls._saved_env = None

    @classmethod
    def setUpClass(cls):
        cls.realm = k5test.realm.K5Realm(
            realm=REALM,
            create_user=False,
            get_creds=False,
            create_host=False,
        )
        cls.realm.addprinc(USER1[0], USER1[1])
        cls.realm.addprinc(USER2[0], USER2[1])
        cls.realm.addprinc(HTTP_SERVICE)
        cls.realm.addprinc(OTHER_SERVICE)
        cls.realm.extract_keytab(HTTP_SERVICE, cls.realm.keytab)
        cls.other_keytab = os.path.join(cls.realm.tmpdir, "other.keytab")
        cls.realm.extract_keytab(OTHER_SERVICE, cls.other_keytab)
        requests_intercept.install()

        cls._init_env()

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        requests_intercept.uninstall()

        cls._restore_env()

    def get(self, app, **kwargs):
        add_wsgi_intercept(HOSTNAME, TEST_PORT, lambda: app)
        try:
            return requests.get(TEST_URL, **kwargs)
        finally:
            remove_wsgi_intercept()

    def user_creds(self, user):
        self.realm.kinit(user[0], user[1])
        return gssapi.Credentials.acquire(
            name=gssapi.Name(user[0]).canonicalize(gssapi.MechType.kerberos),
            usage="initiate",
        ).creds

    def test_unauthorized(self):
        """
        A client that sends no token is challenged with a bare Negotiate.
        """
        app = SPNEGOAuthMiddleware(index, principal=HTTP_SERVICE, keytab=self.realm.keytab)
        r = self.get(app)

        assert r.status_code == 401
        assert r.content == b"Unauthorized"
        assert r.headers["WWW-Authenticate"] == "Negotiate"

    def test_authorized(self):
        """
        Ensure that when the client sends a correct authorization token,
        they receive a 200 OK response and the realm-stripped user principal
        is passed on to the application.
        """
        creds = self.user_creds(USER1)
        app = SPNEGOAuthMiddleware(index, principal=HTTP_SERVICE, keytab=self.realm.keytab)
        r = self.get(app, auth=CustomSpnegoAuth(creds))

        assert r.status_code == 200
        assert r.content == b"Hello user1"

        authenticate_header = r.headers["WWW-Authenticate"].split()
        assert authenticate_header[0].lower() == "negotiate"
        assert isinstance(base64.b64decode(authenticate_header[1], validate=True), bytes)

    def test_authorized_keeps_realm(self):
        creds = self.user_creds(USER2)
        app = SPNEGOAuthMiddleware(index, principal=HTTP_SERVICE, keytab=self.realm.keytab,
                                   strip_realm=False)
        r = self.get(app, auth=CustomSpnegoAuth(creds))

        assert r.status_code == 200
        assert r.content == f"Hello {USER2[0]}".encode()

    def test_authorized_from_settings(self):
        creds = self.user_creds(USER1)
        settings = {
            "acceptor_principal": HTTP_SERVICE,
            "acceptor_keytab_filepath": os.path.basename(self.realm.keytab),
        }
        app = SPNEGOAuthMiddleware.from_settings(
            index, settings, config_dir=os.path.dirname(self.realm.keytab))
        r = self.get(app, auth=CustomSpnegoAuth(creds))

        assert r.status_code == 200
        assert r.content == b"Hello user1"

    def test_bad_token(self):
        """
        A garbage token is rejected with a bare challenge and no detail.
        """
        app = SPNEGOAuthMiddleware(index, principal=HTTP_SERVICE, keytab=self.realm.keytab)
        bad = base64.b64encode(b"bad-token").decode()
        r = self.get(app, headers={"Authorization": f"Negotiate {bad}"})

        assert r.status_code == 401
        assert r.content == b"Unauthorized"
        assert r.headers["WWW-Authenticate"] == "Negotiate"

    def test_bad_token_result(self):
        identity = AcceptorIdentity.load(HTTP_SERVICE, self.realm.keytab)
        authenticator = SPNEGOAuthenticator(identity)
        bad = base64.b64encode(b"bad-token").decode()
        with self.assertLogs("wsgi_spnego", "WARNING"):
            result = authenticator.extract_credentials(f"Negotiate {bad}")
        assert result == Rejected(NEGOTIATION_FAILED)

    def test_ticket_for_another_service(self):
        """
        A ticket for HTTP/example.org cannot be accepted with a keytab that
        only holds another service's keys.
        """
        creds = self.user_creds(USER1)
        app = SPNEGOAuthMiddleware(index, principal=OTHER_SERVICE, keytab=self.other_keytab)
        r = self.get(app, auth=CustomSpnegoAuth(creds))

        assert r.status_code == 401
        assert r.headers["WWW-Authenticate"] == "Negotiate"

    def test_missing_keytab(self):
        creds = self.user_creds(USER1)
        missing = os.path.join(self.realm.tmpdir, "missing.keytab")
        app = SPNEGOAuthMiddleware(index, principal=HTTP_SERVICE, keytab=missing)
        r = self.get(app, auth=CustomSpnegoAuth(creds))

        assert r.status_code == 401
        assert r.headers["WWW-Authenticate"] == "Negotiate"
