"""
Markdown safety checks for long-text fields before they reach the UI.

Content is never rewritten here; suspicious patterns are logged, and the
critical ones (script execution) make the text invalid.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

SUSPICIOUS_PATTERNS = [
    (re.compile(r"javascript:", re.I), "javascript: protocol", True),
    (re.compile(r"data:text/html", re.I), "data:text/html URI", True),
    (re.compile(r"data:[^\s]*script", re.I), "data URI with script", False),
    (re.compile(r"<script[\s>]", re.I), "<script> tag", True),
    (re.compile(r"<iframe[\s>]", re.I), "<iframe> tag", False),
    (re.compile(r"<object[\s>]", re.I), "<object> tag", False),
    (re.compile(r"<embed[\s>]", re.I), "<embed> tag", False),
    (re.compile(r"\son\w+\s*=", re.I), "inline event handler", False),
    (re.compile(r"vbscript:", re.I), "vbscript: protocol", False),
    (re.compile(r"file://", re.I), "file:// protocol", False),
]

MARKDOWN_FIELDS = ("description", "acceptance_criteria", "design", "notes", "text")


@dataclass
class MarkdownCheck:
    is_valid: bool = True
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def validate_markdown(content: Optional[str], field_name: str = "content") -> MarkdownCheck:
    if not content:
        return MarkdownCheck()

    check = MarkdownCheck()
    for pattern, description, critical in SUSPICIOUS_PATTERNS:
        found = pattern.findall(content)
        if not found:
            continue
        warning = f"Suspicious content in {field_name}: {description} (found: {', '.join(found)})"
        logger.warning(warning)
        check.warnings.append(warning)
        if critical:
            check.is_valid = False
            check.errors.append(warning)
    return check


def validate_issue_markdown(data: Dict[str, Optional[str]]) -> Dict[str, MarkdownCheck]:
    """Check every markdown field present in data. Returns only failing fields."""
    failures = {}
    for name in MARKDOWN_FIELDS:
        if name in data:
            check = validate_markdown(data[name], name)
            if not check.is_valid:
                failures[name] = check
    return failures
