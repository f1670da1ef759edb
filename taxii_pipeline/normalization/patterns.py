"""
Best-effort observable extraction from STIX indicator patterns.

Only flat comparison expressions joined by AND/OR are understood, e.g.
``[ipv4-addr:value = '1.2.3.4'] OR [domain-name:value = 'evil.example']``.
Grouping brackets are dropped rather than evaluated and qualifiers
(WITHIN, REPEATS, START/STOP) are ignored. Clauses that do not match the
extractor table produce nothing.
"""

import logging
import re
from typing import Any, Dict, List, Pattern, Tuple

from taxii_pipeline.errors import PatternParseError
from taxii_pipeline.models import Observable

logger = logging.getLogger(__name__)

_QUOTED_VALUE = r"'((?:[^'\\]|\\.)*)'"
_BOOLEAN_OPERATOR = re.compile(r"\s(AND|OR)\s")


def _extractor(object_path: str) -> Pattern:
    return re.compile(r"^\s*" + object_path + r"\s*=\s*" + _QUOTED_VALUE)


class PatternEvaluator:
    """Extracts (type, value) candidates from a STIX pattern string."""

    # First match wins, so keep more specific paths ahead of general ones
    EXTRACTORS: List[Tuple[str, Pattern]] = [
        ('ip', _extractor(r"ipv4-addr:value")),
        ('ip', _extractor(r"ipv6-addr:value")),
        ('domain', _extractor(r"domain-name:value")),
        ('url', _extractor(r"url:value")),
        ('file_hash', _extractor(r"file:hashes\.(?:'(?i:MD5|SHA-1|SHA-256)'|(?i:MD5|SHA1|SHA256))")),
        ('email', _extractor(r"email-addr:value")),
        ('email', _extractor(r"email-message:sender_ref\.value")),
        ('process', _extractor(r"process:name")),
        ('registry_key', _extractor(r"windows-registry-key:key")),
        ('mutex', _extractor(r"mutex:name")),
        ('file_name', _extractor(r"file:name")),
    ]

    def extract(self, indicator: Dict[str, Any]) -> List[Observable]:
        """
        Extract observables from an indicator's pattern.

        Args:
            indicator: STIX indicator object

        Returns:
            Unique observables in pattern order; empty if the object is not
            a STIX-patterned indicator or the pattern cannot be split
        """
        if indicator.get('type') != 'indicator':
            return []

        pattern_type = indicator.get('pattern_type')
        if pattern_type and pattern_type != 'stix':
            logger.debug(f"Skipping {pattern_type} pattern on {indicator.get('id')}")
            return []

        pattern = indicator.get('pattern')
        if not isinstance(pattern, str) or not pattern.strip():
            return []

        try:
            clauses = self.parse_clauses(pattern)
        except PatternParseError as e:
            logger.warning(f"Unparseable pattern on {indicator.get('id')}: {e}")
            return []

        observables = []
        for clause in clauses:
            observable = self.match_clause(clause)
            if observable is None:
                logger.debug(f"No extractor for clause: {clause}")
                continue
            if observable not in observables:
                observables.append(observable)
        return observables

    def match_clause(self, clause: str):
        """Return the Observable for one comparison clause, or None."""
        for ioc_type, regex in self.EXTRACTORS:
            match = regex.match(clause)
            if match:
                value = re.sub(r"\\(.)", r"\1", match.group(1))
                return Observable(type=ioc_type, value=value)
        return None

    @staticmethod
    def parse_clauses(pattern: str) -> List[str]:
        """
        Split a pattern into comparison clauses on top-level AND/OR.

        Brackets and parentheses outside string literals are discarded.

        Raises:
            PatternParseError: On unbalanced brackets or an unterminated string
        """
        text = []
        masked = []
        depth = 0
        in_quote = False
        i = 0
        while i < len(pattern):
            ch = pattern[i]
            if in_quote:
                if ch == '\\' and i + 1 < len(pattern):
                    text.append(pattern[i:i + 2])
                    masked.append('xx')
                    i += 2
                    continue
                if ch == "'":
                    in_quote = False
                    text.append(ch)
                    masked.append(ch)
                else:
                    text.append(ch)
                    masked.append('x')
            elif ch == "'":
                in_quote = True
                text.append(ch)
                masked.append(ch)
            elif ch in '[(':
                depth += 1
                text.append(' ')
                masked.append(' ')
            elif ch in '])':
                depth -= 1
                if depth < 0:
                    raise PatternParseError(f"Unbalanced '{ch}' at offset {i}")
                text.append(' ')
                masked.append(' ')
            else:
                text.append(ch)
                masked.append(ch)
            i += 1

        if in_quote:
            raise PatternParseError("Unterminated string literal")
        if depth != 0:
            raise PatternParseError("Unbalanced brackets")

        text = ''.join(text)
        masked = ''.join(masked)

        clauses = []
        start = 0
        for match in _BOOLEAN_OPERATOR.finditer(masked):
            clauses.append(text[start:match.start()])
            start = match.end()
        clauses.append(text[start:])
        return [clause.strip() for clause in clauses if clause.strip()]
