import hashlib
import logging
import os
import secrets
from secrets import compare_digest
from typing import Dict, Optional, Tuple

from itsdangerous import BadSignature, URLSafeSerializer

from .storage import DATA_DIR, ensure_directories, now_ms


PASSWORD_ALGORITHM = "pbkdf2"
PASSWORD_ITERATIONS = 100_000
PASSWORD_KEYLEN = 64
PASSWORD_DIGEST = "sha512"
PASSWORD_SALT_BYTES = 16

UPLOAD_ID_BYTES = 10
DASHBOARD_KEY_BYTES = 12
PASSWORD_VERSION_BYTES = 8

VIEW_COOKIE_PREFIX = "fadedrop_view_"
VIEW_COOKIE_DEFAULT_MAX_AGE = 6 * 60 * 60
VIEW_COOKIE_MIN_MAX_AGE = 60

security_logger = logging.getLogger("fadedrop.security")


def generate_id(byte_len: int = UPLOAD_ID_BYTES) -> str:
    """Random hex identifier, safe to embed in URLs."""

    return secrets.token_hex(byte_len)


def generate_dashboard_key() -> str:
    return secrets.token_urlsafe(DASHBOARD_KEY_BYTES)


def generate_password_version() -> str:
    return secrets.token_hex(PASSWORD_VERSION_BYTES)


def hash_password(plaintext: str) -> Dict[str, object]:
    """Derive a salted PBKDF2 hash and return every parameter needed to verify it."""

    salt = secrets.token_hex(PASSWORD_SALT_BYTES)
    derived = hashlib.pbkdf2_hmac(
        PASSWORD_DIGEST,
        plaintext.encode("utf-8"),
        salt.encode("utf-8"),
        PASSWORD_ITERATIONS,
        dklen=PASSWORD_KEYLEN,
    )
    return {
        "algorithm": PASSWORD_ALGORITHM,
        "iterations": PASSWORD_ITERATIONS,
        "keylen": PASSWORD_KEYLEN,
        "digest": PASSWORD_DIGEST,
        "salt": salt,
        "hash": derived.hex(),
    }


def verify_password(plaintext: str, password_record: Optional[Dict[str, object]]) -> bool:
    """Re-derive *plaintext* with the stored parameters and compare the hashes."""

    if not password_record:
        return False
    algorithm = password_record.get("algorithm", PASSWORD_ALGORITHM)
    if algorithm != PASSWORD_ALGORITHM:
        raise ValueError(f"Unsupported password algorithm: {algorithm}")

    derived = hashlib.pbkdf2_hmac(
        str(password_record["digest"]),
        plaintext.encode("utf-8"),
        str(password_record["salt"]).encode("utf-8"),
        int(password_record["iterations"]),
        dklen=int(password_record["keylen"]),
    )
    return compare_digest(derived.hex(), str(password_record["hash"]))


# ---------------------------------------------------------------------------
# Secret key and signed viewer cookies
# ---------------------------------------------------------------------------


def _load_secret_key() -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = DATA_DIR / ".secret_key"
    try:
        ensure_directories()
        try:
            # Exclusive creation so concurrent workers agree on one key.
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            security_logger.warning("Secret key file exists but is empty, regenerating")
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)

        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(generated)
            handle.flush()
            os.fsync(handle.fileno())
        security_logger.warning("Generated new secret key - stored in %s", secret_path)
        return generated
    except OSError as error:
        security_logger.critical(
            "SECURITY WARNING: Using in-memory secret key. Viewer sessions will not persist across restarts. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


_SECRET_KEY_VALUE: Optional[str] = None
_viewer_serializer: Optional[URLSafeSerializer] = None


def get_secret_key_value() -> str:
    global _SECRET_KEY_VALUE
    if _SECRET_KEY_VALUE is None:
        _SECRET_KEY_VALUE = _load_secret_key()
    return _SECRET_KEY_VALUE


def _get_viewer_serializer() -> URLSafeSerializer:
    global _viewer_serializer
    if _viewer_serializer is None:
        _viewer_serializer = URLSafeSerializer(get_secret_key_value(), salt="viewer-auth")
    return _viewer_serializer


def view_cookie_name(upload_id: str) -> str:
    return f"{VIEW_COOKIE_PREFIX}{upload_id}"


def issue_viewer_token(record: Dict[str, object]) -> Optional[str]:
    """Signed cookie value carrying the record's current password version."""

    version = record.get("password_version")
    if not version:
        return None
    return _get_viewer_serializer().dumps({"id": record["id"], "v": version})


def read_viewer_token(upload_id: str, raw_value: Optional[str]) -> Optional[str]:
    """Return the password version carried by a cookie, or ``None`` if it is forged or foreign."""

    if not raw_value:
        return None
    try:
        payload = _get_viewer_serializer().loads(raw_value)
    except (BadSignature, ValueError):
        security_logger.info("viewer_cookie_rejected upload_id=%s reason=bad_signature", upload_id)
        return None
    if not isinstance(payload, dict) or payload.get("id") != upload_id:
        return None
    version = payload.get("v")
    return version if isinstance(version, str) else None


def viewer_cookie_max_age(record: Dict[str, object], now: Optional[int] = None) -> int:
    """Cookie lifetime in seconds, bounded by the record's auto-delete instant."""

    now = now_ms() if now is None else now
    expiration = record.get("expiration") or {}
    boundary = expiration.get("auto_delete_at")
    if not isinstance(boundary, int):
        boundary = expiration.get("expires_at")
    if not isinstance(boundary, int):
        return VIEW_COOKIE_DEFAULT_MAX_AGE
    return max(int((boundary - now) // 1000), VIEW_COOKIE_MIN_MAX_AGE)


# ---------------------------------------------------------------------------
# Access control gate
# ---------------------------------------------------------------------------


def authorize_dashboard(record: Optional[Dict[str, object]], supplied_key: Optional[str]) -> bool:
    if not record or not supplied_key:
        return False
    expected = record.get("dashboard_key")
    if not isinstance(expected, str) or not expected:
        return False
    return compare_digest(expected.encode("utf-8"), supplied_key.encode("utf-8"))


def authorize_viewer(record: Dict[str, object], cookie_token: Optional[str]) -> bool:
    """*cookie_token* is the password version read back from the viewer cookie."""

    if not record.get("password"):
        return True
    expected = record.get("password_version")
    if not expected or not cookie_token:
        return False
    return compare_digest(str(expected).encode("utf-8"), cookie_token.encode("utf-8"))


def verify_viewer_password(record: Dict[str, object], plaintext: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Check a viewer's password; the caller must hold the record lock."""

    candidate = (plaintext or "").strip()
    if not candidate or not verify_password(candidate, record.get("password")):
        return False, "invalid"
    if not record.get("password_version"):
        record["password_version"] = generate_password_version()
    return True, None
