import logging
import re
import unicodedata
from typing import Iterable, List

logger = logging.getLogger("catalog_search")

_LEVELS = {"INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR, "DEBUG": logging.DEBUG}


def log_with_timestamp(message, level="INFO"):
    """Log message through the package logger (timestamp comes from the formatter)"""
    logger.log(_LEVELS.get(level, logging.INFO), message)


def fold_text(s: str) -> str:
    """Lowercase and strip diacritics, mirroring the index's asciifolding analyzer"""
    if not isinstance(s, str):
        return ""
    s = unicodedata.normalize("NFKD", s.lower().strip())
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = s.replace("đ", "d").replace("ı", "i")
    s = re.sub(r"\s+", " ", s).strip()
    return s


def unique_tags(tags: Iterable[str]) -> List[str]:
    """Strip, drop empties and de-duplicate tags keeping first-seen order"""
    seen = set()
    out = []
    for tag in tags or []:
        if not isinstance(tag, str):
            continue
        tag = tag.strip()
        if tag and tag not in seen:
            seen.add(tag)
            out.append(tag)
    return out
