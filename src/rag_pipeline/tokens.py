"""Token estimation for cost accounting and context budgeting."""

import math
from typing import Any

from transformers import AutoTokenizer

from src.utils.logging import get_logger

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate tokens with the characters/4 heuristic."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenCounter:
    """Counts tokens with a HuggingFace tokenizer or the chars/4 heuristic.

    The heuristic is the default. A tokenizer name switches to true token
    counts at the price of loading the tokenizer once.
    """

    def __init__(self, tokenizer_name: str | None = None):
        self.tokenizer_name = tokenizer_name or None
        self.tokenizer: Any = None
        if self.tokenizer_name:
            logger.info("loading_tokenizer", tokenizer=self.tokenizer_name)
            self.tokenizer = AutoTokenizer.from_pretrained(self.tokenizer_name)  # type: ignore

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self.tokenizer is not None:
            return len(self.tokenizer.encode(text, add_special_tokens=False))
        return estimate_tokens(text)
