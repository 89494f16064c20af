"""Text helpers for entity extraction.

Normalization, domain parsing and vocabulary term counting used by the
entity graph builder. All regex work uses the `regex` library with a
timeout so pathological input cannot stall a worker.
"""

from __future__ import annotations

from functools import lru_cache

import regex

from graphclassifier.core.logging import get_logger

logger = get_logger(__name__)

# Regex timeout for security (used in match operations)
REGEX_TIMEOUT = 1.0

# Subject prefix pattern for normalization (Re:, Fwd:, FW:, etc.)
SUBJECT_PREFIX_PATTERN = regex.compile(r"^(Re:|RE:|Fwd:|FWD:|FW:|Fw:)\s*")

_WHITESPACE = regex.compile(r"\s+")

# Second-level public suffixes where the registrable label sits one step left
_MULTI_PART_SUFFIXES = frozenset(
    {
        "co.uk",
        "org.uk",
        "ac.uk",
        "gov.uk",
        "com.au",
        "net.au",
        "org.au",
        "co.nz",
        "co.jp",
        "co.in",
        "com.br",
        "com.mx",
        "co.za",
    }
)


def normalize_name(name: str) -> str:
    """Case-fold and collapse whitespace; the node dedup key."""
    if not name:
        return ""
    return _WHITESPACE.sub(" ", name, timeout=REGEX_TIMEOUT).strip().casefold()


def normalize_email(email: str) -> str:
    """Lowercase and strip an address; empty string if it has no local part or domain."""
    if not email:
        return ""
    email = email.strip().lower()
    local, sep, domain = email.partition("@")
    if not sep or not local or not domain or "@" in domain:
        return ""
    return email


def extract_domain(email: str) -> str:
    """Extract domain from email address.

    Returns:
        Lowercase domain, or empty string if invalid
    """
    if not email or "@" not in email:
        return ""
    return email.rsplit("@", 1)[1].strip().lower()


def normalize_subject(subject: str) -> str:
    """Normalize subject by removing Re:/Fwd: prefixes.

    Returns:
        Normalized subject for comparison
    """
    if not subject:
        return ""

    try:
        normalized = subject
        while True:
            new_normalized = SUBJECT_PREFIX_PATTERN.sub("", normalized, timeout=REGEX_TIMEOUT)
            if new_normalized == normalized:
                break
            normalized = new_normalized
        return normalized.strip().lower()
    except (regex.error, TimeoutError):
        return subject.strip().lower()


def company_name_from_domain(domain: str, aliases: dict[str, str] | None = None) -> str:
    """Derive a company display name from a mail domain.

    Configured aliases win; otherwise the registrable label is title-cased
    ('mail.acme.co.uk' -> 'Acme', 'client.com' -> 'Client').

    Args:
        domain: Lowercase mail domain
        aliases: Domain -> display name overrides

    Returns:
        Company name, or empty string for an unusable domain
    """
    if not domain:
        return ""
    if aliases and domain in aliases:
        return aliases[domain]

    labels = [label for label in domain.split(".") if label]
    if len(labels) < 2:
        return labels[0].title() if labels else ""

    if ".".join(labels[-2:]) in _MULTI_PART_SUFFIXES and len(labels) >= 3:
        registrable = labels[-3]
    else:
        registrable = labels[-2]

    return registrable.replace("-", " ").title()


@lru_cache(maxsize=1024)
def _term_pattern(term: str) -> regex.Pattern:
    escaped = regex.escape(term.strip())
    return regex.compile(rf"(?<!\w){escaped}(?!\w)", regex.IGNORECASE)


def count_term(text: str, term: str) -> int:
    """Count case-insensitive whole-word occurrences of a term.

    Returns 0 when the text is empty or the search times out.
    """
    if not text or not term or not term.strip():
        return 0
    try:
        return sum(1 for _ in _term_pattern(term).finditer(text, timeout=REGEX_TIMEOUT))
    except TimeoutError:
        logger.warning("term_count_timeout", term=term[:50], text_length=len(text))
        return 0
