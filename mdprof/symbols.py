"""Symbol tables for address-to-label resolution.

Three assembler/linker dialects are understood:

* asm68k binary symbol files (``MND`` magic)
* AS listing symbol dumps (``Segment CODE`` header)
* ``nm`` style ``address type name`` text
"""

from __future__ import annotations

import bisect
import logging
import struct
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

ASM68K_MAGIC = b"MND"
AS_MAGIC = b"Segment CODE"

ASM68K_HEADER_SIZE = 8
ASM68K_GLOBAL_LABEL = 2
ASM68K_LOCAL_LABEL = 6

_ASM68K_RECORD = struct.Struct("<IBB")


class SymbolFileError(ValueError):
    """Raised when a symbol file cannot be parsed."""


class SymbolTable:
    """Bidirectional address/label lookup.

    Several labels may share one address; the label declared last wins when
    resolving an address to a display name.
    """

    def __init__(self, symbols: Optional[Iterable[Tuple[int, str]]] = None) -> None:
        self.address_to_labels: Dict[int, List[str]] = {}
        self.label_to_address: Dict[str, int] = {}
        self._sorted_labels: Optional[List[str]] = None
        for address, label in symbols or ():
            self.add(address, label)

    def __len__(self) -> int:
        return len(self.label_to_address)

    def __contains__(self, label: object) -> bool:
        return label in self.label_to_address

    def add(self, address: int, label: str) -> None:
        self.address_to_labels.setdefault(address, []).append(label)
        self.label_to_address[label] = address
        self._sorted_labels = None

    def resolve(self, address: int) -> Optional[str]:
        """Return the display label for ``address`` or ``None``."""
        labels = self.address_to_labels.get(address)
        if not labels:
            return None
        return labels[-1]

    def address_of(self, label: str) -> Optional[int]:
        return self.label_to_address.get(label)

    def labels_with_prefix(self, prefix: str) -> List[Tuple[str, int]]:
        """Return ``(label, address)`` pairs whose label starts with ``prefix``."""
        if self._sorted_labels is None:
            self._sorted_labels = sorted(self.label_to_address)
        labels = self._sorted_labels
        matches = []
        for label in labels[bisect.bisect_left(labels, prefix) :]:
            if not label.startswith(prefix):
                break
            matches.append((label, self.label_to_address[label]))
        return matches


def read_symbols(data: bytes) -> SymbolTable:
    """Parse ``data`` after sniffing its dialect from the first bytes."""
    if data[: len(ASM68K_MAGIC)] == ASM68K_MAGIC:
        table = read_asm68k_symbols(data)
        dialect = "asm68k"
    elif data[: len(AS_MAGIC)] == AS_MAGIC:
        table = read_as_symbols(data)
        dialect = "as"
    else:
        table = read_nm_symbols(data)
        dialect = "nm"
    logger.debug("Parsed %d %s symbols", len(table), dialect)
    return table


def load_symbols(path: Union[str, Path]) -> SymbolTable:
    return read_symbols(Path(path).read_bytes())


def read_asm68k_symbols(data: bytes) -> SymbolTable:
    # Locals follow the globals in the file, so their parents are already known.
    table = SymbolTable()
    addresses: List[int] = []
    pos = ASM68K_HEADER_SIZE
    while pos < len(data):
        if pos + _ASM68K_RECORD.size > len(data):
            raise SymbolFileError(f"asm68k symbol record truncated at offset {pos}")
        address, label_type, length = _ASM68K_RECORD.unpack_from(data, pos)
        pos += _ASM68K_RECORD.size
        raw = data[pos : pos + length]
        if len(raw) != length:
            raise SymbolFileError(f"asm68k symbol name truncated at offset {pos}")
        pos += length
        name = raw.decode("utf-8", errors="replace")

        if label_type == ASM68K_GLOBAL_LABEL:
            label = name
        elif label_type == ASM68K_LOCAL_LABEL:
            # Parent is the last label declared at the closest lower address.
            index = bisect.bisect_left(addresses, address) - 1
            if index < 0:
                raise SymbolFileError(f"local label {name} has no parent label")
            label = f"{table.resolve(addresses[index])}{name}"
        else:
            raise SymbolFileError(f"unknown label type {label_type} for {name}")
        table.add(address, label)
        index = bisect.bisect_left(addresses, address)
        if index == len(addresses) or addresses[index] != address:
            addresses.insert(index, address)
    return table


def read_as_symbols(data: bytes) -> SymbolTable:
    text = data.decode("utf-8", errors="replace")
    _, marker, body = text.partition("Symbols in Segment")
    if not marker:
        raise SymbolFileError("AS symbol file has no 'Symbols in Segment' section")
    table = SymbolTable()
    for line in body.splitlines()[1:]:
        if not line.strip():
            continue
        fields = line.split()
        if len(fields) < 2:
            raise SymbolFileError(f"malformed AS symbol line: {line!r}")
        name, symbol_type = fields[0], fields[1]
        if symbol_type != "Int":
            continue
        if len(fields) < 3:
            raise SymbolFileError(f"AS symbol {name} has no address")
        try:
            address = int(fields[2], 16) & 0xFFFFFFFF
        except ValueError:
            continue
        table.add(address, name)
    return table


def read_nm_symbols(data: bytes) -> SymbolTable:
    text = data.decode("utf-8", errors="replace")
    table = SymbolTable()
    for line in text.split("\n"):
        fields = line.split()
        if len(fields) != 3:
            continue
        try:
            address = int(fields[0], 16)
        except ValueError:
            continue
        table.add(address, fields[2])
    return table
