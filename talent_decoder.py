#!/usr/bin/env python3
"""
Decode in-game talent export strings into a per-node selection table.

The export string is base64 over a little-endian (LSB-first) bitstream: a
header of byte-aligned varints followed by one record per node in the
schema's fullNodeOrder. The exact record grammar has not been confirmed, so it
is described by a DecoderConfiguration; calibrate_decoder.py searches for the
configuration that best matches a known build.

Usage:
  python talent_decoder.py --class Warlock --spec Affliction --code <string>
"""
from __future__ import annotations
import argparse
import base64
import binascii
import configparser
import enum
from dataclasses import dataclass, replace
from pathlib import Path

import pandas as pd

from talent_schema import (TALENTS_JSON, NodeKind, NodeSchema, SchemaNotFound, TalentNode,
                           available_specs, load_models, pick_schema)

BASE_DIR = Path(__file__).parent
CONFIG_INI = BASE_DIR / "config.ini"

# Fallbacks when config.ini has no [talents] defaults
DEFAULT_CLASS = "Warlock"
DEFAULT_SPEC = "Affliction"


class MalformedInput(ValueError):
    '''
    Raised when a talent string is not valid base64. Dropping bad characters
    would shift every following bit, so the whole decode fails instead.
    '''


def decode_bytes(code: str) -> bytes:
    '''
    Decodes a talent string into raw bytes. Surrounding whitespace is ignored
    and missing '=' padding is restored.

    >>> decode_bytes('hQI')
    b'\\x85\\x02'
    '''
    text = (code or "").strip()
    if not text:
        return b""
    text += "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedInput(f"Invalid talent string: {e}") from e


class BitReader:
    '''
    BitReader is a forward-only cursor over a byte buffer.

    Bits are read least-significant first. Reads past the end of the buffer
    yield zero bits and still advance the cursor, so a short string decodes to
    a mostly empty build instead of failing.
    '''
    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.byte_index = 0
        self.bit_index = 0

    def __repr__(self) -> str:
        return f'BitReader(byte={self.byte_index}, bit={self.bit_index}, size={len(self.data)})'

    def read_bits(self, n: int) -> int:
        result = 0
        for i in range(n):
            if self.byte_index < len(self.data):
                bit = (self.data[self.byte_index] >> self.bit_index) & 1
                result |= bit << i
            self.bit_index += 1
            if self.bit_index == 8:
                self.bit_index = 0
                self.byte_index += 1
        return result

    def align_to_byte(self) -> None:
        if self.bit_index:
            self.bit_index = 0
            self.byte_index += 1

    def read_varint(self) -> int:
        '''
        Reads a byte-aligned varint: 7 value bits per byte, little-endian
        groups, high bit set while more groups follow.
        '''
        self.align_to_byte()
        result = 0
        shift = 0
        while True:
            chunk = self.read_bits(8)
            result |= (chunk & 0x7F) << shift
            if not chunk & 0x80:
                return result
            shift += 7

    def bytes_remaining(self) -> int:
        return max(0, len(self.data) - self.byte_index)

    def bits_consumed(self) -> int:
        return self.byte_index * 8 + self.bit_index


class ChoiceBitWidth(enum.Enum):
    '''Width of the alternative index stored for a taken choice node.'''
    ONE_BIT = "one_bit"
    TWO_BITS = "two_bits"
    BY_ALTERNATIVE_COUNT = "by_alternative_count"

    def width(self, node: TalentNode) -> int:
        if self is ChoiceBitWidth.ONE_BIT:
            return 1
        if self is ChoiceBitWidth.TWO_BITS:
            return 2
        return 1 if node.alternative_count <= 2 else 2


class RankEncoding(enum.Enum):
    '''How the rank of a taken multi-rank single node is stored.'''
    OFFSET_BY_ONE = "offset_by_one"
    RAW = "raw"
    FIXED_THREE_BIT_RAW = "fixed_three_bit_raw"


def rank_bit_width(max_ranks: int) -> int:
    '''
    Number of bits needed for max_ranks - 1 distinct values, capped at 4.
    '''
    if max_ranks <= 1:
        return 0
    if max_ranks <= 2:
        return 1
    if max_ranks <= 4:
        return 2
    if max_ranks <= 8:
        return 3
    return 4


@dataclass(frozen=True)
class DecoderConfiguration:
    '''
    One hypothesis about the bitstream grammar.

    header_field_count  varints skipped before the first node record
    choice_bit_width    width of the alternative index of choice nodes
    choice_has_trailing_bit
                        whether an extra (ignored) bit follows the index
    rank_encoding       how multi-rank single nodes store their rank
    '''
    header_field_count: int = 0
    choice_bit_width: ChoiceBitWidth = ChoiceBitWidth.BY_ALTERNATIVE_COUNT
    choice_has_trailing_bit: bool = False
    rank_encoding: RankEncoding = RankEncoding.OFFSET_BY_ONE

    def __post_init__(self):
        if self.header_field_count < 0:
            raise ValueError("header_field_count must be >= 0")

    def describe(self) -> str:
        return (f"header_fields={self.header_field_count} choice_bits={self.choice_bit_width.value} "
                f"choice_trailing_bit={str(self.choice_has_trailing_bit).lower()} "
                f"rank_encoding={self.rank_encoding.value}")

    def to_ini(self) -> str:
        '''Renders the configuration as a [decoder] block for config.ini.'''
        return "\n".join([
            "[decoder]",
            f"header_fields = {self.header_field_count}",
            f"choice_bits = {self.choice_bit_width.value}",
            f"choice_trailing_bit = {str(self.choice_has_trailing_bit).lower()}",
            f"rank_encoding = {self.rank_encoding.value}",
        ])


@dataclass(frozen=True)
class SelectionRecord:
    taken: bool
    ranks_taken: int
    max_ranks: int
    chosen_alternative: int | None = None


# Stand-in for ids in fullNodeOrder that are not in the node index
_UNINDEXED = TalentNode(id=-1)


def _read_ranks(reader: BitReader, node: TalentNode, configuration: DecoderConfiguration) -> int:
    width = rank_bit_width(node.max_ranks)
    if width == 0:
        return 1
    encoding = configuration.rank_encoding
    if encoding is RankEncoding.OFFSET_BY_ONE:
        ranks = reader.read_bits(width) + 1
    elif encoding is RankEncoding.RAW:
        ranks = reader.read_bits(width) or 1
    else:
        ranks = reader.read_bits(3) or 1
    return min(ranks, node.max_ranks)


def _read_node(reader: BitReader, node: TalentNode, configuration: DecoderConfiguration) -> SelectionRecord:
    if reader.read_bits(1) == 0:
        return SelectionRecord(False, 0, node.max_ranks)
    if node.kind is NodeKind.CHOICE:
        alternative = reader.read_bits(configuration.choice_bit_width.width(node))
        if configuration.choice_has_trailing_bit:
            reader.read_bits(1)
        return SelectionRecord(True, 1, node.max_ranks, min(alternative, node.alternative_count - 1))
    return SelectionRecord(True, _read_ranks(reader, node, configuration), node.max_ranks)


def decode_selections(code: str, schema: NodeSchema,
                      configuration: DecoderConfiguration = DecoderConfiguration(),
                      debug: bool = False) -> dict[int, SelectionRecord]:
    '''
    Decodes a talent string into {node_id: SelectionRecord} for every indexed
    node in the schema. Raises MalformedInput if the string is not base64;
    a short or truncated bitstream is not an error.
    '''
    reader = BitReader(decode_bytes(code))
    header = [reader.read_varint() for _ in range(configuration.header_field_count)]
    if debug:
        print(f"[DEBUG] {configuration.describe()} header={header} size={len(reader.data)}")

    selections: dict[int, SelectionRecord] = {}
    for node_id in schema.node_order:
        node = schema.get(node_id)
        # Unindexed nodes still own bits in the stream
        record = _read_node(reader, node or _UNINDEXED, configuration)
        if node is not None:
            selections[node_id] = record
    # Indexed nodes left out of fullNodeOrder own no bits and are never taken
    for node_id, node in schema.nodes.items():
        if node_id not in selections:
            selections[node_id] = SelectionRecord(False, 0, node.max_ranks)

    if debug:
        taken = sum(1 for r in selections.values() if r.taken)
        print(f"[DEBUG] consumed {reader.bits_consumed()} bits, {reader.bytes_remaining()} bytes left, {taken} taken")
    return selections


def empty_selections(schema: NodeSchema) -> dict[int, SelectionRecord]:
    return {node_id: SelectionRecord(False, 0, node.max_ranks) for node_id, node in schema.nodes.items()}


def decode_or_empty(code: str, schema: NodeSchema,
                    configuration: DecoderConfiguration = DecoderConfiguration()) -> dict[int, SelectionRecord]:
    '''
    Like decode_selections, but a malformed string yields a table with every
    node not taken, so a renderer can always draw the tree.
    '''
    try:
        return decode_selections(code, schema, configuration)
    except MalformedInput as e:
        print(f"Could not decode talent string: {e}")
        return empty_selections(schema)


def selections_frame(schema: NodeSchema, selections: dict[int, SelectionRecord]) -> pd.DataFrame:
    rows = []
    for node in schema.ordered_nodes():
        sel = selections.get(node.id) or SelectionRecord(False, 0, node.max_ranks)
        rows.append({
            "node_id": node.id,
            "tree": node.origin,
            "name": node.display_name(sel.chosen_alternative),
            "taken": sel.taken,
            "ranks": sel.ranks_taken,
            "max_ranks": sel.max_ranks,
            "choice": sel.chosen_alternative,
        })
    return pd.DataFrame(rows, columns=["node_id", "tree", "name", "taken", "ranks", "max_ranks", "choice"])


def read_decoder_configuration(cfg_path: str | Path = CONFIG_INI) -> DecoderConfiguration:
    '''
    Reads the [decoder] section of config.ini. Missing keys and unknown values
    fall back to the defaults of DecoderConfiguration.
    '''
    default = DecoderConfiguration()
    cfg = configparser.ConfigParser()
    try:
        cfg.read(cfg_path)
    except configparser.Error as e:
        print(f"Ignoring unreadable config {cfg_path}: {e}")
        return default

    header_fields = default.header_field_count
    raw = cfg.get("decoder", "header_fields", fallback="").strip()
    if raw.isdigit():
        header_fields = int(raw)
    elif raw:
        print(f"Unknown header_fields '{raw}' in config.ini; using {header_fields}")

    try:
        trailing = cfg.getboolean("decoder", "choice_trailing_bit", fallback=default.choice_has_trailing_bit)
    except ValueError:
        trailing = default.choice_has_trailing_bit

    return DecoderConfiguration(
        header_field_count=header_fields,
        choice_bit_width=_parse_enum(ChoiceBitWidth, cfg.get("decoder", "choice_bits", fallback=""),
                                     default.choice_bit_width),
        choice_has_trailing_bit=trailing,
        rank_encoding=_parse_enum(RankEncoding, cfg.get("decoder", "rank_encoding", fallback=""),
                                  default.rank_encoding),
    )


def _parse_enum(enum_cls, raw: str, default):
    value = (raw or "").strip().lower().replace("-", "_")
    if not value:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        print(f"Unknown {enum_cls.__name__} '{raw}' in config.ini; using {default.value}")
        return default


def read_default_spec(cfg_path: str | Path = CONFIG_INI) -> tuple[str, str]:
    cfg = configparser.ConfigParser()
    try:
        cfg.read(cfg_path)
    except configparser.Error:
        return DEFAULT_CLASS, DEFAULT_SPEC
    return (cfg.get("talents", "default_class", fallback=DEFAULT_CLASS),
            cfg.get("talents", "default_spec", fallback=DEFAULT_SPEC))


def main(argv: list[str] | None = None) -> int:
    default_class, default_spec = read_default_spec()
    ap = argparse.ArgumentParser(description="Decode a talent export string into a per-node selection table.")
    ap.add_argument("code", nargs="?", default=None, help="Talent export string")
    ap.add_argument("--code", dest="code_opt", default=None, help="Talent export string (alternative to the positional)")
    ap.add_argument("--class", dest="class_name", default=default_class, help=f"Class name (default: {default_class})")
    ap.add_argument("--spec", dest="spec_name", default=default_spec, help=f"Specialization name (default: {default_spec})")
    ap.add_argument("--talents", default=str(TALENTS_JSON), help="Path to talents.json (see fetch_talents_json.py)")
    ap.add_argument("--config", default=str(CONFIG_INI), help="config.ini with the [decoder] section")
    ap.add_argument("--header-fields", type=int, default=None, help="Override the number of header varints")
    ap.add_argument("--choice-bits", choices=[c.value for c in ChoiceBitWidth], default=None)
    ap.add_argument("--choice-trailing-bit", choices=["true", "false"], default=None)
    ap.add_argument("--rank-encoding", choices=[r.value for r in RankEncoding], default=None)
    ap.add_argument("--taken-only", action="store_true", help="Only list taken nodes")
    ap.add_argument("--debug", action="store_true")
    args = ap.parse_args(argv)

    code = args.code_opt or args.code
    if not code:
        print("No talent string given.")
        return 1

    configuration = read_decoder_configuration(args.config)
    overrides = {}
    if args.header_fields is not None:
        overrides["header_field_count"] = args.header_fields
    if args.choice_bits:
        overrides["choice_bit_width"] = ChoiceBitWidth(args.choice_bits)
    if args.choice_trailing_bit:
        overrides["choice_has_trailing_bit"] = args.choice_trailing_bit == "true"
    if args.rank_encoding:
        overrides["rank_encoding"] = RankEncoding(args.rank_encoding)
    if overrides:
        try:
            configuration = replace(configuration, **overrides)
        except ValueError as e:
            print(f"Invalid decoder configuration: {e}")
            return 1

    try:
        models = load_models(args.talents)
    except (OSError, ValueError) as e:
        print(f"Could not load {args.talents}: {e}")
        return 1
    try:
        schema = pick_schema(models, args.class_name, args.spec_name)
    except SchemaNotFound as e:
        print(e)
        print("Available: " + ", ".join(f"{c}/{s}" for c, s in available_specs(models)))
        return 1

    print(f"Decoding {schema.class_name}/{schema.spec_name} with {configuration.describe()}")
    try:
        selections = decode_selections(code, schema, configuration, debug=args.debug)
    except MalformedInput as e:
        print(e)
        return 1

    df = selections_frame(schema, selections)
    if args.taken_only:
        df = df.loc[df["taken"]]
    with pd.option_context("display.max_rows", None, "display.width", 160):
        print(df.to_string(index=False))
    taken = df.loc[df["taken"]]
    print(f"\n{len(taken)} node(s) taken, {int(taken['ranks'].sum())} point(s) spent")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
