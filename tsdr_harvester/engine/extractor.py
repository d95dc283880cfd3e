"""Turn one TSDR case-status XML document into an ``ExtractionResult``.

Documents follow WIPO ST.96: the trademark body lives in the Trademark
namespace while contact blocks (names, phones, emails) use the Common
namespace. Every field extractor below is isolated, so a missing or odd
sub-tree only nulls out that one field.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional
from xml.etree import ElementTree

import structlog

from ..errors import ParseError
from ..jobs.models import ExtractionResult, ResultStatus

TRADEMARK_NS = "http://www.wipo.int/standards/XMLSchema/ST96/Trademark"
COMMON_NS = "http://www.wipo.int/standards/XMLSchema/ST96/Common"

# Prefixes used in the path tables below.
NAMESPACES = {"tm": TRADEMARK_NS, "com": COMMON_NS}

TRADEMARK_PATH = (
    "tm:TrademarkTransactionBody",
    "tm:TransactionContentBag",
    "tm:TransactionData",
    "tm:TrademarkBag",
    "tm:Trademark",
)
ATTORNEY_NAME_PATH = (
    "tm:RecordAttorney",
    "com:Contact",
    "com:Name",
    "com:PersonName",
    "com:PersonFullName",
)
CORRESPONDENT_CONTACT_PATH = ("tm:NationalCorrespondent", "com:Contact")
MARK_TEXT_PATH = (
    "tm:MarkRepresentation",
    "tm:MarkReproduction",
    "tm:WordMarkSpecification",
    "tm:MarkVerbalElementText",
)
FILING_DATE_PATH = ("tm:ApplicationDate",)
ABANDON_DATE_PATH = ("tm:NationalTrademarkInformation", "tm:ApplicationAbandonedDate")
ABANDON_REASON_PATH = (
    "tm:NationalTrademarkInformation",
    "tm:MarkCurrentStatusExternalDescriptionText",
)

PARSE_FAILURE = "parse failure"
NO_TRADEMARK_DATA = "no trademark data found"
EXTRACTION_FAILURE = "failed to extract data from XML"

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATE_WITH_OFFSET = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:Z|[+-]\d{2}:?\d{2})$")
_FALLBACK_DATE_FORMATS = (
    "%Y%m%d",
    "%m/%d/%Y",
    "%Y/%m/%d",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%a %b %d %Y",
)


def _qualify(step: str) -> str:
    prefix, _, local = step.partition(":")
    return f"{{{NAMESPACES[prefix]}}}{local}"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


@dataclass(frozen=True)
class XmlNode:
    """Minimal navigation capability over an element: child, attribute, text."""

    element: ElementTree.Element

    def child(self, *path: str) -> Optional["XmlNode"]:
        current = self.element
        for step in path:
            found = current.find(_qualify(step))
            if found is None:
                return None
            current = found
        return XmlNode(current)

    def children(self, step: str) -> Iterator["XmlNode"]:
        for element in self.element.findall(_qualify(step)):
            yield XmlNode(element)

    def attribute(self, name: str) -> str | None:
        """Attribute value, matching either a bare or a namespace-qualified name."""

        if name in self.element.attrib:
            return self.element.attrib[name]
        for key, value in self.element.attrib.items():
            if _local_name(key) == name:
                return value
        return None

    def text(self) -> str | None:
        value = (self.element.text or "").strip()
        return value or None

    def text_at(self, *path: str) -> str | None:
        node = self.child(*path)
        return node.text() if node is not None else None


def normalize_date(value: str) -> str:
    """Normalize a source date to ``YYYY-MM-DD``.

    Trailing UTC offsets are dropped (``2025-08-19-04:00`` -> ``2025-08-19``),
    normalized strings pass through, anything else is parsed with ISO and a
    few common layouts. Unparsable input is returned unchanged.
    """

    text = value.strip()
    if _ISO_DATE.match(text):
        return text
    match = _DATE_WITH_OFFSET.match(text)
    if match:
        return match.group(1)
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass
    for fmt in _FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return value


class RecordExtractor:
    """Pure document -> result transformation. Never raises."""

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self.logger = logger or structlog.get_logger("tsdr_harvester.extractor")
        self._field_extractors: dict[str, Callable[[XmlNode], str | None]] = {
            "owner_name": self._owner_name,
            "mark_text": self._mark_text,
            "owner_phone": self._owner_phone,
            "owner_email": self._owner_email,
            "filing_date": self._filing_date,
            "abandon_date": self._abandon_date,
            "abandon_reason": self._abandon_reason,
        }

    def extract(self, document: str | bytes, identifier: str) -> ExtractionResult:
        try:
            root = self._parse(document)
        except ParseError as exc:
            self.logger.debug("document_parse_failed", identifier=identifier, error=str(exc))
            return ExtractionResult.failure(identifier, PARSE_FAILURE)

        try:
            return self._extract_record(root, identifier)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("record_extraction_failed", identifier=identifier, error=str(exc))
            return ExtractionResult.failure(identifier, EXTRACTION_FAILURE)

    # ------------------------------------------------------------------
    @staticmethod
    def _parse(document: str | bytes) -> XmlNode:
        if isinstance(document, str):
            # Bytes let the parser honour the declared encoding.
            document = document.encode("utf-8")
        try:
            return XmlNode(ElementTree.fromstring(document))
        except ElementTree.ParseError as exc:
            raise ParseError(str(exc)) from exc

    def _extract_record(self, root: XmlNode, identifier: str) -> ExtractionResult:
        if self._reports_missing_record(root):
            self.logger.debug("source_reports_not_found", identifier=identifier)
            return ExtractionResult.not_found(identifier)

        trademark = self._trademark_node(root)
        if trademark is None:
            self.logger.debug(
                "trademark_node_missing",
                identifier=identifier,
                root=_local_name(root.element.tag),
            )
            return ExtractionResult.failure(identifier, NO_TRADEMARK_DATA)

        attorney = self._attorney_name(trademark)
        if attorney:
            self.logger.debug("attorney_represented", identifier=identifier, attorney=attorney)
            return ExtractionResult(
                identifier=identifier,
                status=ResultStatus.HAS_ATTORNEY,
                attorney_name=attorney,
            )

        fields = {
            name: self._isolated(name, extractor, trademark, identifier)
            for name, extractor in self._field_extractors.items()
        }
        return ExtractionResult(identifier=identifier, status=ResultStatus.SUCCESS, **fields)

    def _isolated(
        self,
        name: str,
        extractor: Callable[[XmlNode], str | None],
        trademark: XmlNode,
        identifier: str,
    ) -> str | None:
        try:
            return extractor(trademark)
        except Exception as exc:  # noqa: BLE001
            self.logger.debug(
                "field_extraction_failed", identifier=identifier, field=name, error=str(exc)
            )
            return None

    @staticmethod
    def _trademark_node(root: XmlNode) -> XmlNode | None:
        if root.element.tag != _qualify("tm:TrademarkTransaction"):
            return None
        return root.child(*TRADEMARK_PATH)

    @staticmethod
    def _reports_missing_record(root: XmlNode) -> bool:
        """True for error documents stating the serial number does not exist."""

        if "error" not in _local_name(root.element.tag).lower():
            return False
        message = " ".join(root.element.itertext()).lower()
        return "not found" in message

    @staticmethod
    def _attorney_name(trademark: XmlNode) -> str | None:
        return trademark.text_at(*ATTORNEY_NAME_PATH)

    # Field extractors --------------------------------------------------
    @staticmethod
    def _owner_name(trademark: XmlNode) -> str | None:
        bag = trademark.child("tm:ApplicantBag")
        if bag is None:
            return None
        for applicant in bag.children("tm:Applicant"):
            name = applicant.child("com:Contact", "com:Name")
            if name is None:
                continue
            entity = name.text_at("com:EntityName")
            if entity:
                return entity
            person = name.text_at("com:PersonName", "com:PersonFullName")
            if person:
                return person
        return None

    @staticmethod
    def _owner_phone(trademark: XmlNode) -> str | None:
        contact = trademark.child(*CORRESPONDENT_CONTACT_PATH)
        if contact is None:
            return None
        bag = contact.child("com:PhoneNumberBag")
        if bag is None:
            return None
        for phone in bag.children("com:PhoneNumber"):
            return phone.text()
        return None

    @staticmethod
    def _owner_email(trademark: XmlNode) -> str | None:
        contact = trademark.child(*CORRESPONDENT_CONTACT_PATH)
        if contact is None:
            return None
        bag = contact.child("com:EmailAddressBag")
        if bag is None:
            return None
        emails = list(bag.children("com:EmailAddressText"))
        for email in emails:
            if email.attribute("emailAddressPurposeCategory") == "Main" and email.text():
                return email.text()
        return emails[0].text() if emails else None

    @staticmethod
    def _mark_text(trademark: XmlNode) -> str | None:
        return trademark.text_at(*MARK_TEXT_PATH)

    @staticmethod
    def _filing_date(trademark: XmlNode) -> str | None:
        value = trademark.text_at(*FILING_DATE_PATH)
        return normalize_date(value) if value else None

    @staticmethod
    def _abandon_date(trademark: XmlNode) -> str | None:
        value = trademark.text_at(*ABANDON_DATE_PATH)
        return normalize_date(value) if value else None

    @staticmethod
    def _abandon_reason(trademark: XmlNode) -> str | None:
        return trademark.text_at(*ABANDON_REASON_PATH)


__all__ = [
    "COMMON_NS",
    "NO_TRADEMARK_DATA",
    "PARSE_FAILURE",
    "RecordExtractor",
    "TRADEMARK_NS",
    "XmlNode",
    "normalize_date",
]
