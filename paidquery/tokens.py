import secrets

DEFAULT_SECRET_BYTES = 16


def generate_secret(nbytes: int = DEFAULT_SECRET_BYTES) -> str:
    """Return a fresh memo token: `nbytes` of CSPRNG output, hex encoded."""
    if nbytes < 8:
        raise ValueError("nbytes must be at least 8")
    return secrets.token_hex(nbytes)
