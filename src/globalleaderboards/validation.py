"""Input validation for score submissions."""

import math
import re

from .errors import ValidationError

__all__ = ["validate", "USER_NAME_PATTERN", "MAX_USER_NAME_LENGTH"]

# Letters, digits, Latin-1 and Latin Extended-A accents, ( ) . _ - and space
USER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\u00C0-\u017F()._\- ]+$")
MIN_USER_NAME_LENGTH = 1
MAX_USER_NAME_LENGTH = 50


def validate(score: float, user_name: str) -> None:
    """Check a score and display name before anything is sent or queued.

    Raises:
        ValidationError: ``INVALID_SCORE``, ``INVALID_USERNAME`` or
            ``INVALID_USERNAME_LENGTH``
    """
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise ValidationError("Score must be a number", "INVALID_SCORE")
    # NaN fails every comparison; infinities have no JSON encoding
    if (isinstance(score, float) and not math.isfinite(score)) or score < 0:
        raise ValidationError("Score must be greater than or equal to 0", "INVALID_SCORE")

    if not isinstance(user_name, str) or not USER_NAME_PATTERN.fullmatch(user_name):
        raise ValidationError(
            "Username contains invalid characters. Only alphanumeric, accented "
            "letters, parentheses, dots, underscores, hyphens, and spaces are allowed",
            "INVALID_USERNAME",
        )

    if not MIN_USER_NAME_LENGTH <= len(user_name) <= MAX_USER_NAME_LENGTH:
        raise ValidationError(
            "Username must be between 1 and 50 characters", "INVALID_USERNAME_LENGTH"
        )
