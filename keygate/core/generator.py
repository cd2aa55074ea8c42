import logging
import secrets

logger = logging.getLogger(__name__)

MIN_ENTROPY_BYTES = 8


def generate_key_identifier(entropy_bytes: int = MIN_ENTROPY_BYTES) -> str:
    """
    Generate an opaque, unguessable key identifier.

    Draws from the OS CSPRNG and encodes as uppercase hex, so 8 bytes
    (64 bits) yields a 16 character token.

    Raises:
        ValueError: If fewer than 64 bits of entropy are requested
    """
    if entropy_bytes < MIN_ENTROPY_BYTES:
        raise ValueError(
            f"Identifiers need at least {MIN_ENTROPY_BYTES} bytes of entropy, "
            f"got {entropy_bytes}"
        )

    return secrets.token_hex(entropy_bytes).upper()
