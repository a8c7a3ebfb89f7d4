from __future__ import annotations

import csv
import io
import json
import re
from typing import Any

import feedparser
import jsonschema

from .errors import ErrorCode, ParseFailure
from .models import Coercion, ParseResult, ProductRecord, RowError, RowErr, RowOk

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "title": ("title", "name", "productname"),
    "price": ("currentprice", "price", "saleprice", "gprice", "gsaleprice"),
    "identifier": ("gtin", "upc", "ean", "isbn", "ggtin", "gupc", "gean"),
    "sku": ("catalogitemid", "sku", "productid", "merchantsku", "gid", "gmpn", "mpn"),
    "brand": ("manufacturer", "brand", "vendor", "gbrand"),
    "in_stock": ("stockavailability", "availability", "instock", "gavailability"),
    "url": ("url", "producturl", "link", "glink"),
}

IDENTIFIER_LENGTHS = range(8, 15)
_IDENTIFIER_PREFIX = re.compile(r"^\s*(upc|gtin|ean|isbn)\s*:\s*", re.IGNORECASE)
_IDENTIFIER_ALLOWED = re.compile(r"^[0-9\s\-.]+$")
_PRICE_STRIP = re.compile(r"[^0-9.,\-]")
_QUANTITY = re.compile(r"^(\d+)\s*(in\s*stock|available|qty|units?)?$")

OUT_OF_STOCK_VALUES = {
    "false",
    "no",
    "n",
    "0",
    "out of stock",
    "outofstock",
    "out-of-stock",
    "unavailable",
    "sold out",
    "soldout",
    "discontinued",
    "backordered",
    "backorder",
    "preorder",
    "pre-order",
}
IN_STOCK_VALUES = {
    "true",
    "yes",
    "y",
    "1",
    "in stock",
    "instock",
    "in-stock",
    "available",
    "ready to ship",
    "ships today",
}

JSON_ENVELOPE_SCHEMA: dict[str, Any] = {
    "oneOf": [
        {"type": "array", "items": {"type": "object"}},
        {
            "type": "object",
            "properties": {
                "products": {"type": "array", "items": {"type": "object"}},
                "items": {"type": "array", "items": {"type": "object"}},
            },
            "anyOf": [{"required": ["products"]}, {"required": ["items"]}],
        },
    ]
}


class Connector:
    name = "base"

    def load_rows(self, text: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def parse(self, content: bytes) -> ParseResult:
        rows = self.load_rows(decode_content(content))
        results: list[RowOk | RowErr] = []
        error_codes: dict[str, int] = {}
        for index, row in enumerate(rows):
            result = map_row(row, index)
            if isinstance(result, RowErr):
                for error in result.errors:
                    error_codes[error.code] = error_codes.get(error.code, 0) + 1
            results.append(result)
        return ParseResult(
            connector=self.name,
            total_rows=len(rows),
            rows=results,
            error_codes=error_codes,
        )


class CsvConnector(Connector):
    name = "CSV"

    def load_rows(self, text: str) -> list[dict[str, Any]]:
        stripped = text.strip()
        if not stripped:
            raise ParseFailure("empty CSV document")
        first_line = stripped.splitlines()[0]
        delimiter = "\t" if first_line.count("\t") > first_line.count(",") else ","
        reader = csv.DictReader(io.StringIO(stripped), delimiter=delimiter)
        if not reader.fieldnames or len(reader.fieldnames) < 2:
            raise ParseFailure("CSV document has no usable header row")
        try:
            rows = []
            for row in reader:
                cleaned = {str(k).strip(): v for k, v in row.items() if k is not None}
                if any((value or "").strip() for value in cleaned.values()):
                    rows.append(cleaned)
        except csv.Error as exc:
            raise ParseFailure(f"malformed CSV: {exc}") from exc
        return rows


class JsonConnector(Connector):
    name = "JSON"

    def load_rows(self, text: str) -> list[dict[str, Any]]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseFailure(f"malformed JSON: {exc.msg}") from exc
        try:
            jsonschema.validate(data, JSON_ENVELOPE_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise ParseFailure(f"unexpected JSON feed shape: {exc.message}") from exc
        if isinstance(data, list):
            return data
        return list(data.get("products") or data.get("items") or [])


class RssConnector(Connector):
    name = "RSS"

    def load_rows(self, text: str) -> list[dict[str, Any]]:
        parsed = feedparser.parse(text)
        if parsed.bozo and not parsed.entries and not parsed.get("version"):
            raise ParseFailure(f"malformed feed: {parsed.bozo_exception}")
        return [_entry_to_row(entry) for entry in parsed.entries]


CONNECTORS: dict[str, type[Connector]] = {
    "CSV": CsvConnector,
    "JSON": JsonConnector,
    "RSS": RssConnector,
}


def decode_content(content: bytes) -> str:
    return content.decode("utf-8-sig", errors="replace")


def sniff_format(content: bytes) -> str:
    head = decode_content(content[:2048]).lstrip()
    if head.startswith("{") or head.startswith("["):
        return "JSON"
    if head.startswith("<"):
        return "RSS"
    return "CSV"


def get_connector(format_kind: str, content: bytes) -> Connector:
    kind = sniff_format(content) if format_kind == "GENERIC" else format_kind
    connector_cls = CONNECTORS.get(kind)
    if connector_cls is None:
        raise ParseFailure(f"no connector for format {format_kind}")
    return connector_cls()


def parse_content(format_kind: str, content: bytes) -> ParseResult:
    return get_connector(format_kind, content).parse(content)


def map_row(row: dict[str, Any], index: int) -> RowOk | RowErr:
    """Map one raw feed row onto ProductRecord fields.

    A row is Ok only with a title, a positive price and a valid GTIN/UPC/EAN. Err rows
    still carry the partially mapped record so callers can quarantine them.
    """
    coercions: list[Coercion] = []
    errors: list[RowError] = []
    lookup = _normalized_lookup(row)

    title = _extract_string(lookup, "title", coercions)
    price = _extract_price(lookup, coercions)
    raw_identifier = _extract_string(lookup, "identifier", coercions)
    identifier = normalize_identifier(raw_identifier)
    stock_text = _extract_string(lookup, "in_stock", coercions)
    in_stock = parse_stock(stock_text, coercions)

    if not title:
        errors.append(RowError("title", ErrorCode.MISSING_TITLE, "Missing product title"))
    if price is None or price <= 0:
        errors.append(
            RowError(
                "price",
                ErrorCode.INVALID_PRICE,
                "Missing or invalid price",
                _first_value(lookup, "price"),
            )
        )
    if identifier is None:
        if raw_identifier:
            errors.append(
                RowError(
                    "identifier",
                    ErrorCode.INVALID_IDENTIFIER,
                    "Identifier is not an 8-14 digit GTIN/UPC/EAN",
                    raw_identifier,
                )
            )
        else:
            errors.append(
                RowError("identifier", ErrorCode.MISSING_IDENTIFIER, "Missing GTIN/UPC/EAN")
            )

    record = ProductRecord(
        row_index=index,
        title=title or "",
        price=price,
        identifier=identifier,
        sku=_extract_string(lookup, "sku", coercions),
        in_stock=in_stock,
        url=_extract_string(lookup, "url", coercions),
        brand=_extract_string(lookup, "brand", coercions),
        raw=dict(row),
    )
    if errors:
        return RowErr(record=record, errors=errors, coercions=coercions)
    return RowOk(record=record, coercions=coercions)


def has_minimum_fields(record: ProductRecord | None) -> bool:
    return bool(record and record.title and record.price is not None and record.price > 0)


def normalize_identifier(value: str | None) -> str | None:
    if not value:
        return None
    stripped = _IDENTIFIER_PREFIX.sub("", value)
    if not _IDENTIFIER_ALLOWED.match(stripped):
        return None
    digits = re.sub(r"\D", "", stripped)
    if len(digits) not in IDENTIFIER_LENGTHS:
        return None
    return digits


def parse_price(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _PRICE_STRIP.sub("", str(value)).replace(",", "")
    if not cleaned or cleaned in {"-", "."}:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_stock(value: str | None, coercions: list[Coercion] | None = None) -> bool:
    if not value:
        if coercions is not None:
            coercions.append(Coercion("in_stock", value, True, "defaulted to in stock"))
        return True
    normalized = value.strip().lower()
    if normalized in OUT_OF_STOCK_VALUES:
        return False
    if normalized in IN_STOCK_VALUES:
        return True
    match = _QUANTITY.match(normalized)
    if match:
        in_stock = int(match.group(1)) > 0
        if coercions is not None:
            coercions.append(Coercion("in_stock", value, in_stock, "quantity"))
        return in_stock
    if coercions is not None:
        coercions.append(Coercion("in_stock", value, True, "unrecognized availability"))
    return True


def _normalized_lookup(row: dict[str, Any]) -> dict[str, Any]:
    lookup: dict[str, Any] = {}
    for key, value in row.items():
        normalized = re.sub(r"[^a-z0-9]", "", str(key).lower())
        lookup.setdefault(normalized, value)
    return lookup


def _first_value(lookup: dict[str, Any], field: str) -> Any:
    for alias in FIELD_ALIASES[field]:
        value = lookup.get(alias)
        if value is not None and value != "":
            return value
    return None


def _extract_string(lookup: dict[str, Any], field: str, coercions: list[Coercion]) -> str | None:
    value = _first_value(lookup, field)
    if value is None:
        return None
    text = str(value)
    stripped = text.strip()
    if not stripped:
        return None
    if stripped != text:
        coercions.append(Coercion(field, text, stripped, "trim"))
    return stripped


def _extract_price(lookup: dict[str, Any], coercions: list[Coercion]) -> float | None:
    value = _first_value(lookup, "price")
    price = parse_price(value)
    if price is not None and isinstance(value, str):
        coercions.append(Coercion("price", value, price, "numeric"))
    return price


def _entry_to_row(entry: Any) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for key, value in entry.items():
        if isinstance(value, (str, int, float)) and not key.endswith("_parsed"):
            row[key] = value
    return row
