"""Token estimation.

Estimates are approximations; exact tokenization belongs to the
downstream completion service.
"""

from __future__ import annotations

import math
from typing import Protocol
from typing import runtime_checkable


@runtime_checkable
class TokenEstimator(Protocol):
    def estimate(self, text: str) -> int: ...


class CharacterTokenEstimator:
    """About four characters per token, rounded up."""

    def __init__(self, chars_per_token: float = 4.0) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        self.chars_per_token = chars_per_token

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def chars_for(self, tokens: int) -> int:
        """Largest character count whose estimate stays within *tokens*."""
        return max(int(tokens * self.chars_per_token), 0)
