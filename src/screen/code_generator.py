"""
Pairing code generation.

Codes are typed by an operator reading them off a wall-mounted screen,
so the alphabet leaves out look-alike characters (0/O, 1/I).
"""

import secrets
from typing import Optional

SAFE_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 4


def generate_pairing_code(exclude: Optional[str] = None) -> str:
    """
    Generate a random pairing code.

    Args:
        exclude: A code the result must differ from (the one that just collided)

    Returns:
        CODE_LENGTH characters drawn uniformly from SAFE_CHARS
    """
    while True:
        code = ''.join(secrets.choice(SAFE_CHARS) for _ in range(CODE_LENGTH))
        if code != exclude:
            return code


def is_valid_code(code: str) -> bool:
    """Check a string against the pairing code format."""
    return len(code) == CODE_LENGTH and all(c in SAFE_CHARS for c in code)
