from passlib.context import CryptContext
from passlib.exc import UnknownHashError

# pbkdf2 has no input length limit, so passwords are hashed as given.
_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password is required.")
    return _pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Check a password against a stored hash; unknown or malformed hashes never match."""
    if not plain_password or not hashed_password:
        return False
    try:
        return _pwd_context.verify(plain_password, hashed_password)
    except (UnknownHashError, ValueError):
        return False