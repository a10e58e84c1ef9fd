import hashlib
import hmac
import re
import secrets
from collections import namedtuple

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from homies_errors import AuthError

Identity = namedtuple("Identity", ["user_id", "username"])

VALID_USERNAME = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{2,29}$")
MIN_PASSWORD_LENGTH = 6

# --------- password hashing ----------
PBKDF2_ITER = 200_000
SALT_BYTES = 16
HASH_LEN = 32


def hash_pass(passphrase: str, salt: bytes = None):
    if salt is None: salt = secrets.token_bytes(SALT_BYTES)
    if isinstance(passphrase, str): passphrase = passphrase.encode("utf-8")
    dk = hashlib.pbkdf2_hmac("sha256", passphrase, salt, PBKDF2_ITER, dklen=HASH_LEN)
    return salt, dk


def verify_pass(passphrase: str, salt: bytes, expected_hash: bytes) -> bool:
    if salt is None or expected_hash is None: return False
    if isinstance(passphrase, str): passphrase = passphrase.encode("utf-8")
    dk = hashlib.pbkdf2_hmac("sha256", passphrase, salt, PBKDF2_ITER, dklen=len(expected_hash))
    return hmac.compare_digest(dk, expected_hash)


class Authenticator:
    """Resolves credentials (password or session token) to an Identity."""

    def __init__(self, db, secret_key, token_max_age=7 * 24 * 3600):
        self.db = db
        self.token_max_age = token_max_age
        self._serializer = URLSafeTimedSerializer(secret_key, salt="homies-session")

    def issue_token(self, identity):
        return self._serializer.dumps({"uid": identity.user_id, "u": identity.username})

    def authenticate(self, credentials):
        if not isinstance(credentials, dict):
            raise AuthError("Username and password are required")

        token = credentials.get("token")
        if token:
            if not isinstance(token, str):
                raise AuthError("Invalid session token")
            return self._from_token(token)

        username = credentials.get("username")
        password = credentials.get("password")
        if not isinstance(username, str) or not isinstance(password, str):
            raise AuthError("Username and password are required")
        username = username.strip()
        if not username or not password:
            raise AuthError("Username and password are required")

        user = self.db.find_user(username)
        if not user or not verify_pass(password, user["pass_salt"], user["pass_hash"]):
            raise AuthError("Invalid username or password")
        return Identity(user["id"], user["username"])

    def _from_token(self, token):
        try:
            data = self._serializer.loads(token, max_age=self.token_max_age)
        except SignatureExpired:
            raise AuthError("Session expired, please log in again")
        except BadSignature:
            raise AuthError("Invalid session token")

        # the user may have been removed since the token was issued
        user = self.db.find_user(data.get("u", ""))
        if not user or user["id"] != data.get("uid"):
            raise AuthError("Invalid session token")
        return Identity(user["id"], user["username"])

    def register_user(self, username, password, email=None):
        if not isinstance(username, str) or not isinstance(password, str):
            raise AuthError("Username and password are required")
        if email is not None and not isinstance(email, str):
            raise AuthError("Invalid email")
        username = username.strip()
        if not VALID_USERNAME.match(username):
            raise AuthError("Invalid username (3-30 chars, letters, numbers, _, -)")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if self.db.find_user(username):
            raise AuthError("Username already taken")

        salt, hashed = hash_pass(password)
        user = self.db.save_user(username, salt, hashed, email=email)
        if not user:
            raise AuthError("Registration failed. User might already exist.")
        return Identity(user["id"], user["username"])
