#!/usr/bin/env python3
"""
OPML outline codec for subscription import and export.

Decoding walks the outline tree depth-first in pre-order with an explicit
stack, so arbitrarily deep nesting cannot exhaust the interpreter stack. Every
``outline`` element carrying an ``xmlUrl`` attribute contributes one URL;
container outlines only contribute their descendants.

Encoding always produces one group outline holding one child per channel.
"""

from typing import Iterable, List, Optional
from xml.etree import ElementTree as ET

from config import get_logger
from errors import FilesystemError, ParseError
from models import Channel

logger = get_logger("opml")

UNKNOWN_TITLE = "Unknown"
GROUP_TITLE = "Outline"


def _feed_url(outline: ET.Element) -> Optional[str]:
    # Some exporters lowercase attribute names
    value = outline.attrib.get("xmlUrl") or outline.attrib.get("xmlurl")
    if value is None:
        return None
    value = value.strip()
    return value or None


def decode_outline(document: str) -> List[str]:
    """Return every feed URL in an OPML document, in pre-order.

    Raises:
        ParseError: the text is not well-formed XML or has no OPML body.
    """
    try:
        root = ET.fromstring(document)
    except ET.ParseError as e:
        raise ParseError(str(e), description="Failed to parse xml") from e

    if root.tag != "opml":
        raise ParseError(f"expected <opml> root element, got <{root.tag}>", description="Failed to parse xml")
    body = root.find("body")
    if body is None:
        raise ParseError("document has no <body> element", description="Failed to parse xml")

    links: List[str] = []
    stack = [child for child in reversed(body) if child.tag == "outline"]
    while stack:
        node = stack.pop()
        url = _feed_url(node)
        if url:
            links.append(url)
        stack.extend(child for child in reversed(node) if child.tag == "outline")

    logger.info(f"Amount of links collected: {len(links)}")
    return links


def encode_outline(channels: Iterable[Channel]) -> str:
    """Serialize channels as an OPML 2.0 document with a single group."""
    root = ET.Element("opml", version="2.0")
    head = ET.SubElement(root, "head")
    ET.SubElement(head, "title").text = "FeedSync subscriptions"
    body = ET.SubElement(root, "body")
    group = ET.SubElement(body, "outline", text=GROUP_TITLE)

    count = 0
    for channel in channels:
        title = channel.title or UNKNOWN_TITLE
        ET.SubElement(group, "outline", type="rss", text=title, title=title, xmlUrl=channel.link)
        count += 1

    ET.indent(root)
    logger.debug(f"Encoded {count} channels as OPML")
    return ET.tostring(root, encoding="unicode", xml_declaration=True)


def read_outline_file(file_path: str) -> List[str]:
    """Read and decode an OPML file.

    Raises:
        FilesystemError: the file could not be read.
        ParseError: the file is not a valid outline document.
    """
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            document = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise FilesystemError(str(e), description="Failed to read file") from e
    return decode_outline(document)


def write_outline_file(file_path: str, channels: Iterable[Channel]) -> None:
    """Encode channels and write them to ``file_path``.

    Raises:
        FilesystemError: the file could not be created or written.
    """
    document = encode_outline(channels)
    try:
        with open(file_path, 'w', encoding='utf-8') as f:
            f.write(document)
            f.write("\n")
    except OSError as e:
        raise FilesystemError(str(e), description="Failed to write file") from e
    logger.info(f"Exported subscriptions to {file_path}")
