"""
Bracketed status-line records written by the trading-platform bots.

Every bot (MT4, MT5, cTrader, NinjaTrader) keeps one status file per account
and rewrites it on each heartbeat. A file holds one record group:

    [TYPE] [MASTER] [MT5] [52381082]
    [STATUS] [ONLINE] [1756317783]
    [CONFIG] [MASTER] [ENABLED] [My master] [NULL] [NULL] [NULL] [NULL] [NULL] [NULL]
    [TRANSLATE] [EURUSD:EURUSD.m] [NULL]
    [TICKET] [12345] [EURUSD] [BUY] [0.10] [1.0850] [1.0800] [1.0900] [1756317700]

This module turns lines into small frozen records. It purposely does no
interpretation beyond typing: ``NULL`` placeholders stay literal strings and
the CONFIG role token is kept as written. The reconciler decides what they
mean.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union
import logging
import re

from ..copier.errors import MalformedRecord


logger = logging.getLogger(__name__)

ROLES = ("PENDING", "MASTER", "SLAVE")
STATES = ("ONLINE", "OFFLINE")
NULL = "NULL"

_TOKEN_RE = re.compile(r"\[([^\]]*)\]")
_BOMS = ("\ufeff", "\ufffe")


@dataclass(frozen=True)
class TypeRecord:
    role: str
    platform: str
    account_id: str


@dataclass(frozen=True)
class StatusRecord:
    state: str
    timestamp: int


@dataclass(frozen=True)
class ConfigRecord:
    """CONFIG line payload.

    ``details`` holds every token after the role token, verbatim. The
    ENABLED/DISABLED switch is the first detail.
    """

    config_role: str
    details: Tuple[str, ...] = ()

    def detail(self, index: int) -> Optional[str]:
        if index < len(self.details):
            return self.details[index]
        return None


@dataclass(frozen=True)
class TranslateRecord:
    mappings: Tuple[Tuple[str, str], ...] = ()

    def as_dict(self) -> Dict[str, str]:
        return dict(self.mappings)


@dataclass(frozen=True)
class TicketRecord:
    ticket: str
    symbol: str
    order_type: str
    lots: Optional[float]
    price: Optional[float]
    sl: Optional[float]
    tp: Optional[float]
    open_time: Optional[str]


Record = Union[TypeRecord, StatusRecord, ConfigRecord, TranslateRecord, TicketRecord]


@dataclass(frozen=True)
class ParsedStatusFile:
    """All records found in one status file."""

    type_record: Optional[TypeRecord] = None
    status: Optional[StatusRecord] = None
    config: Optional[ConfigRecord] = None
    translations: Dict[str, str] = field(default_factory=dict)
    tickets: Tuple[TicketRecord, ...] = ()

    @property
    def is_account(self) -> bool:
        return self.type_record is not None


def tokenize(line: str) -> List[str]:
    """Return the bracket-delimited tokens of ``line`` in order, trimmed."""
    return [m.group(1).strip() for m in _TOKEN_RE.finditer(line)]


def _clean(line: str) -> str:
    for bom in _BOMS:
        line = line.replace(bom, "")
    return line.replace("\x00", "").strip()


def _parse_type(tokens: List[str]) -> Optional[TypeRecord]:
    if len(tokens) < 4:
        return None
    role = tokens[1].upper()
    if role not in ROLES:
        return None
    return TypeRecord(role=role, platform=tokens[2], account_id=tokens[3])


def _parse_status(tokens: List[str], line: str) -> Optional[StatusRecord]:
    if len(tokens) < 3:
        return None
    raw = tokens[2]
    try:
        ts = int(raw, 10)
    except ValueError:
        raise MalformedRecord(line, f"timestamp {raw!r} is not a base-10 integer")
    return StatusRecord(state=tokens[1].upper(), timestamp=ts)


def _parse_config(tokens: List[str]) -> Optional[ConfigRecord]:
    if len(tokens) < 2:
        return None
    return ConfigRecord(config_role=tokens[1].upper(), details=tuple(tokens[2:]))


def _parse_translate(tokens: List[str]) -> TranslateRecord:
    pairs = []
    for tok in tokens[1:]:
        if tok == NULL or ":" not in tok:
            continue
        src, dst = tok.split(":", 1)
        src, dst = src.strip(), dst.strip()
        if src and dst:
            pairs.append((src, dst))
    return TranslateRecord(mappings=tuple(pairs))


def _maybe_float(value: Optional[str]) -> Optional[float]:
    if value is None or value == "" or value == NULL:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_ticket(tokens: List[str]) -> Optional[TicketRecord]:
    if len(tokens) < 4:
        return None
    padded = tokens + [""] * (9 - len(tokens))
    return TicketRecord(
        ticket=padded[1],
        symbol=padded[2],
        order_type=padded[3],
        lots=_maybe_float(padded[4]),
        price=_maybe_float(padded[5]),
        sl=_maybe_float(padded[6]),
        tp=_maybe_float(padded[7]),
        open_time=padded[8] or None,
    )


def parse_line(line: str) -> Optional[Record]:
    """Parse one raw line into a record.

    Returns None for blank lines, comments, unknown record kinds and records
    with too few tokens. Raises MalformedRecord when a STATUS timestamp is not
    an integer.
    """
    line = _clean(line)
    if not line:
        return None
    tokens = tokenize(line)
    if not tokens:
        return None

    kind = tokens[0].upper()
    if kind == "TYPE":
        return _parse_type(tokens)
    if kind == "STATUS":
        return _parse_status(tokens, line)
    if kind == "CONFIG":
        return _parse_config(tokens)
    if kind == "TRANSLATE":
        return _parse_translate(tokens)
    if kind == "TICKET":
        return _parse_ticket(tokens)
    return None


def parse_status_lines(lines: Iterable[str]) -> ParsedStatusFile:
    """Fold the lines of one status file into a ParsedStatusFile.

    The first TYPE line defines the account; STATUS and CONFIG keep the last
    occurrence. MalformedRecord propagates to the caller.
    """
    type_record: Optional[TypeRecord] = None
    status: Optional[StatusRecord] = None
    config: Optional[ConfigRecord] = None
    translations: Dict[str, str] = {}
    tickets: List[TicketRecord] = []

    for raw in lines:
        rec = parse_line(raw)
        if rec is None:
            continue
        if isinstance(rec, TypeRecord):
            if type_record is None:
                type_record = rec
            elif rec != type_record:
                logger.warning("ignoring extra TYPE line %r after %r", rec, type_record)
        elif isinstance(rec, StatusRecord):
            status = rec
        elif isinstance(rec, ConfigRecord):
            config = rec
        elif isinstance(rec, TranslateRecord):
            translations.update(rec.as_dict())
        elif isinstance(rec, TicketRecord):
            tickets.append(rec)

    return ParsedStatusFile(
        type_record=type_record,
        status=status,
        config=config,
        translations=translations,
        tickets=tuple(tickets),
    )


def parse_status_text(text: str) -> ParsedStatusFile:
    """Parse the decoded content of a status file."""
    return parse_status_lines(text.splitlines())


def format_config_line(config_role: str, details: Iterable[str]) -> str:
    """Render a CONFIG line in the layout the bots read back."""
    parts = [f"[{config_role}]"] + [f"[{d}]" for d in details]
    return "[CONFIG] " + " ".join(parts)


__all__ = [
    "ROLES",
    "STATES",
    "NULL",
    "TypeRecord",
    "StatusRecord",
    "ConfigRecord",
    "TranslateRecord",
    "TicketRecord",
    "ParsedStatusFile",
    "tokenize",
    "parse_line",
    "parse_status_lines",
    "parse_status_text",
    "format_config_line",
]
