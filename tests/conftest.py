"""Shared fixtures: a miniature talents.json block and an LSB-first bit packer."""

from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest

from talent_schema import build_schema


class BitWriter:
    """Packs bits least-significant first, the layout talent strings use."""

    def __init__(self) -> None:
        self._buf = bytearray()
        self._bitbuf = 0
        self._bitcnt = 0

    def write_bits(self, value: int, nbits: int) -> "BitWriter":
        v = value & ((1 << nbits) - 1) if nbits else 0
        self._bitbuf |= v << self._bitcnt
        self._bitcnt += nbits
        while self._bitcnt >= 8:
            self._buf.append(self._bitbuf & 0xFF)
            self._bitbuf >>= 8
            self._bitcnt -= 8
        return self

    def write_flags(self, *bits: int) -> "BitWriter":
        for bit in bits:
            self.write_bits(bit, 1)
        return self

    def align_to_byte(self) -> None:
        if self._bitcnt > 0:
            self._buf.append(self._bitbuf & 0xFF)
            self._bitbuf = 0
            self._bitcnt = 0

    def write_varint(self, value: int) -> "BitWriter":
        self.align_to_byte()
        while True:
            group = value & 0x7F
            value >>= 7
            if value:
                self._buf.append(group | 0x80)
            else:
                self._buf.append(group)
                return self

    def get_bytes(self) -> bytes:
        self.align_to_byte()
        return bytes(self._buf)

    def to_code(self) -> str:
        """Base64 text with the '=' padding stripped, as exported in game."""
        return base64.b64encode(self.get_bytes()).decode("ascii").rstrip("=")


def _entry(entry_id: int, name: str, max_ranks: int = 1) -> dict:
    return {"id": entry_id, "name": name, "maxRanks": max_ranks, "icon": "inv_misc_questionmark"}


SAMPLE_BLOCK = {
    "className": "Warlock",
    "classId": 9,
    "specName": "Affliction",
    "specId": 265,
    "classNodes": [
        {"id": 100, "name": "Fel Armor", "type": "single", "maxRanks": 1,
         "entries": [_entry(1000, "Fel Armor")], "next": [101], "posX": 0, "posY": 0},
        {"id": 101, "name": "Demonic Embrace", "type": "single", "maxRanks": 2,
         "entries": [_entry(1010, "Demonic Embrace", 2)], "next": [102], "posX": 600, "posY": 600},
        {"id": 102, "name": "Soul Leech / Dark Pact", "type": "choice", "maxRanks": 1,
         "entries": [_entry(1020, "Soul Leech"), _entry(1021, "Dark Pact")], "next": [], "posX": 0, "posY": 1200},
    ],
    "specNodes": [
        {"id": 200, "name": "Malefic Touch", "type": "single", "maxRanks": 3,
         "entries": [_entry(2000, "Malefic Touch", 3)], "next": [201], "posX": 0, "posY": 0},
        {"id": 201, "name": "Haunt / Siphon Life / Drain Soul", "type": "choice", "maxRanks": 1,
         "entries": [_entry(2010, "Haunt"), _entry(2011, "Siphon Life"), _entry(2012, "Drain Soul")],
         "next": [202], "posX": 0, "posY": 600},
        {"id": 202, "name": "Creeping Death", "type": "tiered", "maxRanks": 4,
         "entries": [_entry(2020, "Creeping Death", 4)], "next": [], "posX": 0, "posY": 1200},
    ],
    "heroNodes": [
        {"id": 300, "name": "Wither", "type": "single", "maxRanks": 1, "subTreeId": 57,
         "entries": [_entry(3000, "Wither")], "next": [301], "posX": 0, "posY": 0},
        {"id": 301, "name": "Blackened Soul", "type": "single", "maxRanks": 1, "subTreeId": 57,
         "entries": [_entry(3010, "Blackened Soul")], "next": [], "posX": 0, "posY": 600},
        {"id": 302, "name": "Demonic Soul", "type": "single", "maxRanks": 1, "subTreeId": 58,
         "entries": [_entry(3020, "Demonic Soul")], "next": [303], "posX": 600, "posY": 0},
        {"id": 303, "name": "Necrolyte Teachings", "type": "single", "maxRanks": 1, "subTreeId": 58,
         "entries": [_entry(3030, "Necrolyte Teachings")], "next": [], "posX": 600, "posY": 600},
    ],
    "subTreeNodes": [
        {"id": 400, "name": "Hellcaller / Soul Harvester", "type": "subtree", "maxRanks": 1,
         "entries": [{"id": 4000, "traitSubTreeId": 57, "name": "Hellcaller"},
                     {"id": 4001, "traitSubTreeId": 58, "name": "Soul Harvester"}]},
    ],
    # 400 (subtree selection) and 999 are not indexed but still own bits
    "fullNodeOrder": [100, 400, 101, 102, 999, 200, 201, 202, 300, 301, 302, 303],
}

# Reference build, encoded with header varints [2, 300], two-bit choice indices
# followed by one extra bit, and raw ranks.
REFERENCE_HEADER = (2, 300)
REFERENCE_EXPECTED = frozenset({100, 101, 102, 202, 300, 301})


def write_reference_build(writer: BitWriter) -> BitWriter:
    for value in REFERENCE_HEADER:
        writer.write_varint(value)
    writer.write_flags(1)              # 100 taken
    writer.write_flags(0)              # 400 not taken
    writer.write_flags(1, 1)           # 101 taken, raw rank 1
    writer.write_flags(1)              # 102 taken
    writer.write_bits(1, 2)            #     alternative 1
    writer.write_flags(1)              #     extra bit
    writer.write_flags(0, 0, 0)        # 999, 200, 201 not taken
    writer.write_flags(1)              # 202 taken
    writer.write_bits(3, 2)            #     raw rank 3
    writer.write_flags(1, 1, 0, 0)     # 300, 301 taken; 302, 303 not taken
    return writer


@pytest.fixture
def bit_writer() -> BitWriter:
    return BitWriter()


@pytest.fixture
def sample_block() -> dict:
    return json.loads(json.dumps(SAMPLE_BLOCK))


@pytest.fixture
def sample_schema(sample_block):
    return build_schema(sample_block)


@pytest.fixture
def reference_code() -> str:
    return write_reference_build(BitWriter()).to_code()


@pytest.fixture
def talents_json(tmp_path: Path, sample_block) -> Path:
    other = dict(sample_block, specName="Destruction", specId=267)
    path = tmp_path / "talents.json"
    path.write_text(json.dumps([sample_block, other]), encoding="utf-8")
    return path
