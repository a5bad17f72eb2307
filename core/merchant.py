"""
merchant.py
------------
Merchant-name normalization layer.

Raw merchant strings from bank sync vary in case, punctuation and trailing
store numbers ("NETFLIX.COM", "Netflix.com #1234"). Grouping on the raw string
splits one subscription into several groups. Every component that groups or
matches by merchant goes through normalize_merchant() so they agree on the key.

Prefix and store-number rules come from config.yaml.
"""

import re
from typing import Optional

import pandas as pd

from config.config_loader import get_merchant_normalization_config


_STORE_NUMBER_RE = re.compile(r"\s*#\s*\d+\s*$")
_LONG_NUMBER_RE = re.compile(r"\s+\d{4,}\s*$")
_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


class MerchantNormalizer:
    """
    Maps raw merchant strings to a canonical grouping key.

    Built once from config. Stateless after init, safe to share across threads.
    """

    def __init__(self):
        self.config = get_merchant_normalization_config()
        self.strip_store_numbers = self.config.get("strip_store_numbers", True)
        self.prefixes = [p.lower() for p in self.config.get("strip_prefixes", [])]

    def normalize(self, name: Optional[str]) -> str:
        """
        Case-fold, drop processor prefixes and store numbers, strip punctuation.

        Returns "" for missing names; callers treat "" as ungroupable.
        """
        if name is None or pd.isna(name):
            return ""
        text = str(name).casefold().strip()

        for prefix in self.prefixes:
            if text.startswith(prefix):
                text = text[len(prefix):].lstrip()
                break

        if self.strip_store_numbers:
            text = _STORE_NUMBER_RE.sub("", text)
            text = _LONG_NUMBER_RE.sub("", text)

        text = _PUNCTUATION_RE.sub(" ", text)
        text = _WHITESPACE_RE.sub(" ", text).strip()
        return text

    def __call__(self, name: Optional[str]) -> str:
        return self.normalize(name)


def normalize_merchant(name: Optional[str]) -> str:
    """Shortcut using a fresh normalizer (config is cached, so this is cheap)."""
    return MerchantNormalizer().normalize(name)
