import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Union

from enzyme_cli_bridge.domain.contracts import WorkspaceRootProvider

DEFAULT_REPLACEMENT = "REDACTED"
_DEFAULT_PATTERNS = (
    (r"npm_[A-Za-z0-9]{36}", "npm_REDACTED"),
    (r"(?i)(//[^\s:]+/:_authToken)=\S+", r"\1=REDACTED"),
    (r"(?i)(//[^\s:]+/:_password)=\S+", r"\1=REDACTED"),
    (r"gh[pousr]_[A-Za-z0-9]{20,}", "gh-REDACTED"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*", "Bearer REDACTED"),
    (
        r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|secret|password))\b\s*[:=]\s*([^\s,;]+)",
        r"\1=REDACTED",
    ),
)
_EXTRA_PATTERNS_ENV = "ENZYME_REDACTION_EXTRA_PATTERNS"


@dataclass(frozen=True)
class RedactionResult:
    text: str
    redacted: bool
    replacements: int


def redact(text: str) -> str:
    return redact_with_audit(text).text


def redact_with_audit(text: str) -> RedactionResult:
    value = text or ""
    total = 0
    for regex, replacement in _compiled_patterns(os.environ.get(_EXTRA_PATTERNS_ENV) or ""):
        value, count = regex.subn(replacement, value)
        total += count
    return RedactionResult(text=value, redacted=total > 0, replacements=total)


@lru_cache(maxsize=4)
def _compiled_patterns(extra_raw: str) -> List[tuple[re.Pattern[str], str]]:
    items: List[tuple[re.Pattern[str], str]] = [
        (re.compile(pattern), replacement) for pattern, replacement in _DEFAULT_PATTERNS
    ]
    for token in extra_raw.split(";;"):
        pattern = token.strip()
        if not pattern:
            continue
        try:
            items.append((re.compile(pattern), DEFAULT_REPLACEMENT))
        except re.error:
            continue
    return items


def resolve_workspace_root(
    source: Union[None, str, Path, WorkspaceRootProvider],
) -> Optional[Path]:
    value: Union[None, str, Path] = source() if callable(source) else source
    if value is None or not str(value).strip():
        return None
    return Path(value).expanduser().resolve()

