"""
Shared XML utilities for the Sanctions Corpus Service

This module contains the XML parsing and text extraction helpers used by
the source adapters.

SECURITY: All XML parsing uses secure defaults to prevent XXE attacks.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Any, Union

from lxml import etree

from errors import ParseError

logger = logging.getLogger(__name__)


def get_secure_parser(recover: bool = True) -> etree.XMLParser:
    """Get a secure, tolerant XML parser

    Entities are never resolved and network access is disabled. With
    ``recover`` enabled the parser keeps going past recoverable errors and
    records them in its error log.

    Args:
        recover: Continue past recoverable syntax errors

    Returns:
        lxml parser instance
    """
    return etree.XMLParser(
        recover=recover,
        resolve_entities=False,
        no_network=True,
        dtd_validation=False,
        load_dtd=False,
        huge_tree=True,
        remove_blank_text=True
    )


def tolerant_parse(content: Union[bytes, str], label: str = "xml") -> Any:
    """Parse XML content, logging recoverable errors and failing only on fatal ones

    Args:
        content: Raw XML document
        label: Name used in log messages (usually the source id)

    Returns:
        Root element

    Raises:
        ParseError: If no document could be recovered
    """
    if isinstance(content, str):
        content = content.encode('utf-8')
    if not content or not content.strip():
        raise ParseError(f"Empty XML document for {label}", source=label)

    parser = get_secure_parser()
    try:
        root = etree.fromstring(content, parser)
    except etree.XMLSyntaxError as e:
        raise ParseError(f"Fatal XML syntax error in {label}: {e}", source=label)

    for entry in parser.error_log:
        if entry.level >= etree.ErrorLevels.FATAL:
            logger.error(f"XML fatal error in {label} (line {entry.line}): {entry.message}")
        else:
            logger.warning(f"XML warning in {label} (line {entry.line}): {entry.message}")

    if root is None:
        raise ParseError(f"No XML root element could be recovered for {label}", source=label)

    return root


def tolerant_parse_file(xml_path: Path, label: Optional[str] = None) -> Any:
    """Parse an XML file with :func:`tolerant_parse`

    Raises:
        ParseError: If the file is missing or unrecoverable
    """
    xml_path = Path(xml_path)
    label = label or xml_path.name
    try:
        content = xml_path.read_bytes()
    except OSError as e:
        raise ParseError(f"Cannot read XML file {xml_path}: {e}", source=label)
    return tolerant_parse(content, label)


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def local_name(elem: Any) -> str:
    """Return the tag of an element without its namespace"""
    tag = elem.tag
    if not isinstance(tag, str):
        return ''
    return etree.QName(tag).localname


def node_text(node: Any) -> Optional[str]:
    """Text value of an XPath result item (element, attribute or string)"""
    if node is None:
        return None
    if isinstance(node, str):
        text = str(node)
    elif hasattr(node, 'itertext'):
        text = ''.join(node.itertext())
    else:
        text = str(node)
    text = text.strip()
    return text or None


def select_values(elem: Any, path: Optional[str]) -> List[str]:
    """Evaluate an XPath expression relative to ``elem`` and return non-empty text values

    Args:
        elem: Context element
        path: XPath expression; ``None`` yields an empty list

    Returns:
        List of stripped text values in document order
    """
    if not path:
        return []
    result = elem.xpath(path)
    if not isinstance(result, list):
        result = [result]
    values = []
    for node in result:
        text = node_text(node)
        if text:
            values.append(text)
    return values


def select_value(elem: Any, path: Optional[str]) -> Optional[str]:
    """First non-empty text value of an XPath expression, or None"""
    values = select_values(elem, path)
    return values[0] if values else None


_STEP_PATTERN = re.compile(r'^([A-Za-z_][\w.-]*)(\[.*\])?$')


def namespace_agnostic(path: Optional[str]) -> Optional[str]:
    """Rewrite element steps of an XPath as ``*[local-name()='step']``

    Feeds switch namespaces between releases (the EU and US lists both
    carry a default namespace), so mapping tables are written without
    prefixes and translated here. Attribute steps, ``.``/``..``, function
    calls and predicates are left untouched; predicates must not contain
    ``/`` or ``|``.

    Args:
        path: XPath expression, possibly a ``|`` union

    Returns:
        Equivalent expression matching elements in any namespace
    """
    if not path:
        return path

    branches = []
    for branch in path.split('|'):
        steps = []
        for step in branch.strip().split('/'):
            match = _STEP_PATTERN.match(step)
            if match:
                name, predicate = match.groups()
                step = f"*[local-name()='{name}']{predicate or ''}"
            steps.append(step)
        branches.append('/'.join(steps))
    return ' | '.join(branches)
