"""Manual interval definitions.

An interval file holds one rule per line::

    // comment
    vblank_handler
    EntryLabel;0x1234,ExitLabel;other_exit,Pretty name,Category

The single-word form expands to ``<word>_start`` / ``<word>_end`` labels.
Address elements are resolved to numbers before the rules reach the engine.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, FrozenSet, List, Optional, Tuple, Union

from lark import Lark, Token, Transformer
from lark.exceptions import LarkError

from .symbols import SymbolTable

logger = logging.getLogger(__name__)

MAIN_THREAD = "Main thread"
INTERRUPTS = "Interrupts"
BUILTIN_CATEGORIES: Tuple[str, ...] = (MAIN_THREAD, INTERRUPTS)
FIRST_CUSTOM_TID = 2

LABEL_PREFIX = "mdp_label_"
COMMENT_PREFIX = "//"

_BREAKPOINT = struct.Struct("<I")

interval_grammar = r"""
    ?start: rule_line
          | shorthand

    rule_line: addr_list "," addr_list ("," field ("," field)?)?
    shorthand: ELEMENT

    addr_list: address (";" address)*
    address: ELEMENT
    field: TEXT?

    ELEMENT: /[^,;\s]+/
    TEXT: /[^,]+/

    %import common.WS_INLINE
    %ignore WS_INLINE
"""

interval_parser = Lark(interval_grammar, parser="lalr")


class IntervalDefinitionError(ValueError):
    """A line of the interval file could not be parsed or resolved."""

    def __init__(self, message: str, line_number: int = 0, line: str = "") -> None:
        if line_number:
            message = f"line {line_number}: {message}: {line.strip()!r}"
        super().__init__(message)
        self.line_number = line_number
        self.line = line


@dataclass(frozen=True)
class ParsedRule:
    """Unresolved rule as written in the interval file."""

    entries: Tuple[str, ...]
    exits: Tuple[str, ...]
    name: Optional[str] = None
    category: Optional[str] = None


class IntervalTransformer(Transformer):
    def address(self, items: List[Token]) -> str:
        return str(items[0])

    def addr_list(self, items: List[str]) -> Tuple[str, ...]:
        return tuple(items)

    def field(self, items: List[Token]) -> Optional[str]:
        if not items:
            return None
        text = str(items[0]).strip()
        return text or None

    def shorthand(self, items: List[Token]) -> ParsedRule:
        element = str(items[0])
        return ParsedRule(
            entries=(f"{element}_start",), exits=(f"{element}_end",), name=element
        )

    def rule_line(self, items: List[object]) -> ParsedRule:
        entries, exits, *fields = items
        name = fields[0] if len(fields) > 0 else None
        category = fields[1] if len(fields) > 1 else None
        return ParsedRule(entries=entries, exits=exits, name=name, category=category)  # type: ignore[arg-type]


def parse_rule_line(line: str, line_number: int = 0) -> ParsedRule:
    try:
        tree = interval_parser.parse(line.strip())
        return IntervalTransformer().transform(tree)
    except LarkError as e:
        raise IntervalDefinitionError(
            f"malformed interval definition ({e.__class__.__name__})", line_number, line
        ) from e


@dataclass(frozen=True)
class IntervalRule:
    """A manual interval with resolved entry and exit addresses."""

    rule_id: int
    entry_addresses: FrozenSet[int]
    exit_addresses: FrozenSet[int]
    name: str
    category: str = MAIN_THREAD

    def is_toggle(self, address: int) -> bool:
        return address in self.entry_addresses and address in self.exit_addresses


@dataclass
class RuleTable:
    """Compiled rules plus the address lookups the engine consults."""

    rules: List[IntervalRule] = field(default_factory=list)
    categories: Dict[str, int] = field(default_factory=dict)
    entries: Dict[int, List[IntervalRule]] = field(default_factory=dict)
    exits: Dict[int, List[IntervalRule]] = field(default_factory=dict)

    def add_rule(
        self,
        entry_addresses: FrozenSet[int],
        exit_addresses: FrozenSet[int],
        name: str,
        category: Optional[str] = None,
    ) -> IntervalRule:
        category = category or MAIN_THREAD
        self.category_tid(category)
        rule = IntervalRule(
            rule_id=len(self.rules),
            entry_addresses=frozenset(entry_addresses),
            exit_addresses=frozenset(exit_addresses),
            name=name,
            category=category,
        )
        self.rules.append(rule)
        for address in sorted(rule.entry_addresses):
            self.entries.setdefault(address, []).append(rule)
        for address in sorted(rule.exit_addresses):
            self.exits.setdefault(address, []).append(rule)
        return rule

    def category_tid(self, category: str) -> int:
        """Return the track id of ``category``, allocating custom ids on first use."""
        if category in BUILTIN_CATEGORIES:
            return BUILTIN_CATEGORIES.index(category)
        tid = self.categories.get(category)
        if tid is None:
            tid = FIRST_CUSTOM_TID + len(self.categories)
            self.categories[category] = tid
        return tid

    def addresses(self) -> List[int]:
        """Every distinct entry or exit address, ascending."""
        return sorted(set(self.entries) | set(self.exits))

    def write_breakpoints(self, stream: BinaryIO) -> int:
        """Serialize the breakpoint list the emulator loads before recording."""
        addresses = self.addresses()
        for address in addresses:
            stream.write(_BREAKPOINT.pack(address & 0xFFFFFFFF))
        return len(addresses)


def _parse_hex(element: str) -> Optional[int]:
    text = element
    if text[:2].lower() == "0x":
        text = text[2:]
    elif text.startswith("$"):
        text = text[1:]
    if not text:
        return None
    try:
        value = int(text, 16)
    except ValueError:
        return None
    if value > 0xFFFFFFFF:
        return None
    return value


def resolve_element(element: str, symbols: SymbolTable) -> List[int]:
    """Resolve one address element of a rule.

    Tries an exact label, then a hex literal, then every ``mdp_label_`` label
    sharing the element as prefix.
    """
    address = symbols.address_of(element)
    if address is not None:
        return [address]
    address = _parse_hex(element)
    if address is not None:
        return [address]
    return [addr for _, addr in symbols.labels_with_prefix(LABEL_PREFIX + element)]


def _resolve_all(
    elements: Tuple[str, ...], symbols: SymbolTable, line_number: int, line: str
) -> FrozenSet[int]:
    addresses = set()
    for element in elements:
        resolved = resolve_element(element, symbols)
        if not resolved:
            raise IntervalDefinitionError(
                f"{element} not found in the symbol file", line_number, line
            )
        addresses.update(resolved)
    return frozenset(addresses)


def read_intervals(text: str, symbols: SymbolTable) -> RuleTable:
    """Parse and resolve an interval definition file."""
    table = RuleTable()
    for line_number, line in enumerate(text.split("\n"), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith(COMMENT_PREFIX):
            continue
        parsed = parse_rule_line(stripped, line_number)
        entries = _resolve_all(parsed.entries, symbols, line_number, line)
        exits = _resolve_all(parsed.exits, symbols, line_number, line)
        rule = table.add_rule(
            entries, exits, parsed.name or stripped, parsed.category or MAIN_THREAD
        )
        logger.debug(
            "Rule %d %r on %r: %d entry, %d exit addresses",
            rule.rule_id,
            rule.name,
            rule.category,
            len(entries),
            len(exits),
        )
    return table


def load_intervals(path: Union[str, Path], symbols: SymbolTable) -> RuleTable:
    return read_intervals(
        Path(path).read_bytes().decode("utf-8", errors="replace"), symbols
    )
