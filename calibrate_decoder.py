#!/usr/bin/env python3
"""
Brute-force calibration of the talent string grammar.

Decodes a reference talent string once per candidate DecoderConfiguration and
scores each decode against the build the string is known to encode. The best
scoring configuration can be pasted into the [decoder] section of config.ini.

Reference file (JSON):
  {
    "class": "Warlock",
    "spec": "Affliction",
    "code": "<talent string>",
    "expectedTaken": [71931, 71932, ...],
    "requireSingleTrack": true,
    "tracks": [[...hero subtree A node ids...], [...subtree B...]]   # optional
  }

When "tracks" is omitted the hero subtrees of the schema are used.
"""
from __future__ import annotations
import argparse
import configparser
import itertools
import json
import os
import sys
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from multiprocessing import cpu_count
from pathlib import Path

import pandas as pd

from talent_decoder import (CONFIG_INI, ChoiceBitWidth, DecoderConfiguration, MalformedInput,
                            RankEncoding, SelectionRecord, decode_selections, read_default_spec)
from talent_schema import TALENTS_JSON, NodeSchema, SchemaNotFound, load_models, pick_schema

BASE_DIR = Path(__file__).parent
REFERENCE_JSON = BASE_DIR / "calibration_reference.json"
REPORTS_DIR = BASE_DIR / "reports"

NODE_WEIGHT = 2
TRACK_BONUS = 10
DEFAULT_MAX_HEADER_FIELDS = 32
BAR_LENGTH = 40


class NoViableConfiguration(RuntimeError):
    '''
    Raised when no candidate configuration decodes the reference string better
    than an empty build would score.
    '''


@dataclass(frozen=True)
class CalibrationReference:
    '''
    A talent string together with what a correct decode must show.

    expected_taken        node ids that are taken in the reference build
    require_single_track  score the "exactly one alternative track fully
                          taken" check (hero subtrees)
    tracks                member node ids per alternative track; None means
                          use the schema's hero subtrees
    '''
    code: str
    expected_taken: frozenset[int] = frozenset()
    require_single_track: bool = False
    tracks: tuple[tuple[int, ...], ...] | None = None
    class_name: str | None = None
    spec_name: str | None = None

    @classmethod
    def from_json(cls, raw_json: dict) -> 'CalibrationReference':
        tracks = raw_json.get("tracks")
        return cls(
            code=str(raw_json["code"]).strip(),
            expected_taken=frozenset(int(n) for n in raw_json.get("expectedTaken", [])),
            require_single_track=bool(raw_json.get("requireSingleTrack", False)),
            tracks=tuple(tuple(int(n) for n in t) for t in tracks) if tracks is not None else None,
            class_name=raw_json.get("class"),
            spec_name=raw_json.get("spec"),
        )

    @classmethod
    def from_file(cls, path: str | Path = REFERENCE_JSON) -> 'CalibrationReference':
        with open(path, encoding="utf-8") as f:
            return cls.from_json(json.load(f))

    def resolve_tracks(self, schema: NodeSchema) -> tuple[tuple[int, ...], ...]:
        tracks = self.tracks if self.tracks is not None else schema.hero_tracks()
        return tuple(t for t in tracks if t)


@dataclass(frozen=True)
class CalibrationCandidate:
    configuration: DecoderConfiguration
    score: int
    # Position in enumerate_configurations, breaks score ties
    order: int = 0
    taken_count: int = 0


def enumerate_configurations(max_header_fields: int = DEFAULT_MAX_HEADER_FIELDS) -> list[DecoderConfiguration]:
    '''
    Returns the full search space in a stable order: lexicographic over
    (header_field_count, choice_bit_width, choice_has_trailing_bit,
    rank_encoding) with enum members in declaration order and False before
    True. header_field_count ranges over [0, max_header_fields).
    '''
    return [DecoderConfiguration(header, width, trailing, ranks)
            for header, width, trailing, ranks in itertools.product(
                range(max_header_fields), ChoiceBitWidth, (False, True), RankEncoding)]


def score_selections(selections: dict[int, SelectionRecord], reference: CalibrationReference,
                     tracks: tuple[tuple[int, ...], ...] = ()) -> int:
    '''
    +2 for every expected node that is taken, -2 for every one that is not.
    With the single track check, the non-empty track with the most taken
    members earns +10 if it is fully taken and -10 otherwise.
    '''
    def is_taken(node_id: int) -> bool:
        sel = selections.get(node_id)
        return sel is not None and sel.taken

    score = sum(NODE_WEIGHT if is_taken(n) else -NODE_WEIGHT for n in reference.expected_taken)
    if reference.require_single_track:
        best = None
        best_count = -1
        for track in tracks:
            if not track:
                continue
            count = sum(1 for n in track if is_taken(n))
            if count > best_count:
                best, best_count = track, count
        if best is not None and best_count == len(best):
            score += TRACK_BONUS
        else:
            score -= TRACK_BONUS
    return score


def baseline_score(reference: CalibrationReference, tracks: tuple[tuple[int, ...], ...] = ()) -> int:
    '''Score of a decode in which nothing is taken.'''
    return score_selections({}, reference, tracks)


def _evaluate(order: int, configuration: DecoderConfiguration, reference: CalibrationReference,
              schema: NodeSchema, tracks, debug: bool = False) -> CalibrationCandidate | None:
    try:
        selections = decode_selections(reference.code, schema, configuration)
    except MalformedInput as e:
        if debug:
            print(f"[DEBUG] dropped {configuration.describe()}: {e}")
        return None
    return CalibrationCandidate(configuration, score_selections(selections, reference, tracks), order,
                                sum(1 for r in selections.values() if r.taken))


def rank_configurations(reference: CalibrationReference, schema: NodeSchema,
                        configurations: list[DecoderConfiguration] | None = None,
                        max_workers: int = 1, progress=None,
                        debug: bool = False) -> list[CalibrationCandidate]:
    '''
    Scores every configuration against the reference and returns the viable
    candidates, best first. Candidates whose decode fails are left out. Equal
    scores keep enumeration order, so the result does not depend on
    max_workers. With more than one worker the decodes run in a process pool;
    the reference, schema and configurations are pickled to the workers.

    progress, if given, is called as progress(done, total) after each
    evaluation, always in the calling process.
    '''
    if configurations is None:
        configurations = enumerate_configurations()
    tracks = reference.resolve_tracks(schema)
    total = len(configurations)
    results: list[CalibrationCandidate] = []

    if max_workers <= 1:
        for order, configuration in enumerate(configurations):
            candidate = _evaluate(order, configuration, reference, schema, tracks, debug)
            if candidate is not None:
                results.append(candidate)
            if progress:
                progress(order + 1, total)
    else:
        with ProcessPoolExecutor(max_workers=max_workers) as pool:
            futures = [pool.submit(_evaluate, order, configuration, reference, schema, tracks, debug)
                       for order, configuration in enumerate(configurations)]
            for done, future in enumerate(as_completed(futures), start=1):
                candidate = future.result()
                if candidate is not None:
                    results.append(candidate)
                if progress:
                    progress(done, total)

    results.sort(key=lambda c: (-c.score, c.order))
    return results


def calibrate(reference: CalibrationReference, schema: NodeSchema,
              configurations: list[DecoderConfiguration] | None = None,
              max_workers: int = 1, debug: bool = False) -> CalibrationCandidate:
    '''
    Returns the highest scoring candidate. Raises NoViableConfiguration when
    the search space is empty, every decode failed, or nothing beats an empty
    decode.
    '''
    ranked = rank_configurations(reference, schema, configurations, max_workers, debug=debug)
    best = select_best(ranked, baseline_score(reference, reference.resolve_tracks(schema)))
    if debug:
        print(f"[DEBUG] best {best.configuration.describe()} score={best.score} of {len(ranked)} viable")
    return best


def select_best(ranked: list[CalibrationCandidate], baseline: int) -> CalibrationCandidate:
    if not ranked:
        raise NoViableConfiguration("No configuration could decode the reference string")
    best = ranked[0]
    if best.score <= baseline:
        raise NoViableConfiguration(
            f"Best score {best.score} does not beat the empty-build baseline {baseline}")
    return best


def candidates_frame(candidates: list[CalibrationCandidate]) -> pd.DataFrame:
    rows = [{
        "rank": i + 1,
        "score": c.score,
        "header_fields": c.configuration.header_field_count,
        "choice_bits": c.configuration.choice_bit_width.value,
        "choice_trailing_bit": c.configuration.choice_has_trailing_bit,
        "rank_encoding": c.configuration.rank_encoding.value,
        "taken": c.taken_count,
        "order": c.order,
    } for i, c in enumerate(candidates)]
    return pd.DataFrame(rows, columns=["rank", "score", "header_fields", "choice_bits",
                                       "choice_trailing_bit", "rank_encoding", "taken", "order"])


def get_max_workers() -> int:
    # 1. Environment variable
    env_val = os.environ.get("TALENT_DECODER_MAX_WORKERS")
    if env_val and env_val.isdigit() and int(env_val) > 0:
        return int(env_val)
    # 2. Fraction of CPU cores from config (workers_core_fraction), else 0.5
    frac = 0.5
    try:
        cfg = configparser.ConfigParser()
        cfg.read(CONFIG_INI)
        raw = cfg.get("calibration", "workers_core_fraction", fallback="0.5").strip()
        if raw.endswith("%"):
            raw = raw[:-1]
        f = float(raw)
        # Support values like 50 -> 0.50
        if f > 1:
            f = f / 100.0
        if 0.01 <= f <= 1.0:
            frac = f
    except (configparser.Error, ValueError):
        pass
    return max(1, int(cpu_count() * frac))


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a whole number, got {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def read_calibration_settings(cfg_path: str | Path = CONFIG_INI) -> tuple[Path, int]:
    reference = REFERENCE_JSON
    max_header = DEFAULT_MAX_HEADER_FIELDS
    cfg = configparser.ConfigParser()
    try:
        cfg.read(cfg_path)
        raw_ref = cfg.get("calibration", "reference", fallback="").strip()
        if raw_ref:
            reference = Path(raw_ref) if Path(raw_ref).is_absolute() else BASE_DIR / raw_ref
        raw_max = cfg.get("calibration", "max_header_fields", fallback="").strip()
        if raw_max.isdigit():
            max_header = int(raw_max)
    except configparser.Error as e:
        print(f"Ignoring unreadable config {cfg_path}: {e}")
    return reference, max_header


def refresh(done, total):
    pct = done / total if total else 1.0
    filled = int(BAR_LENGTH * pct)
    bar = "#" * filled + "-" * (BAR_LENGTH - filled)
    sys.stdout.write(f"\rCalibration Progress: [{bar}] {done}/{total}")
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    default_ref, default_max_header = read_calibration_settings()
    ap = argparse.ArgumentParser(description="Search decoder configurations against a known talent build.")
    ap.add_argument("--reference", default=str(default_ref), help="Reference JSON (default from config.ini [calibration])")
    ap.add_argument("--talents", default=str(TALENTS_JSON), help="Path to talents.json")
    ap.add_argument("--class", dest="class_name", default=None, help="Override the reference class")
    ap.add_argument("--spec", dest="spec_name", default=None, help="Override the reference spec")
    ap.add_argument("--max-header-fields", type=int, default=default_max_header,
                    help=f"Exclusive upper bound for header varints (default: {default_max_header})")
    ap.add_argument("--max-workers", type=positive_int, default=None,
                    help="Worker processes (default: TALENT_DECODER_MAX_WORKERS, then config.ini)")
    ap.add_argument("--top", type=int, default=10, help="How many candidates to print")
    ap.add_argument("--csv", action="store_true", help="Write the full ranking to reports/calibration.csv")
    ap.add_argument("--debug", action="store_true")
    args = ap.parse_args(argv)

    try:
        reference = CalibrationReference.from_file(args.reference)
    except (OSError, ValueError, KeyError) as e:
        print(f"Could not load calibration reference {args.reference}: {e}")
        print("Create it from a known build (see the format in calibrate_decoder.py) "
              "and point --reference or [calibration] reference at it.")
        return 1

    default_class, default_spec = read_default_spec()
    class_name = args.class_name or reference.class_name or default_class
    spec_name = args.spec_name or reference.spec_name or default_spec
    try:
        schema = pick_schema(load_models(args.talents), class_name, spec_name)
    except (OSError, ValueError) as e:
        print(f"Could not load {args.talents}: {e}")
        return 1
    except SchemaNotFound as e:
        print(e)
        return 1

    configurations = enumerate_configurations(args.max_header_fields)
    max_workers = args.max_workers or get_max_workers()
    print(f"Calibrating {schema.class_name}/{schema.spec_name}: {len(configurations)} configuration(s), "
          f"{len(reference.expected_taken)} expected node(s), {max_workers} worker(s)")

    start_time = time.perf_counter()
    ranked = rank_configurations(reference, schema, configurations, max_workers,
                                 progress=refresh, debug=args.debug)
    print(f"\nEvaluated in {time.perf_counter() - start_time:.2f}s")

    df = candidates_frame(ranked)
    if args.csv:
        REPORTS_DIR.mkdir(parents=True, exist_ok=True)
        out = REPORTS_DIR / "calibration.csv"
        df.to_csv(out, index=False)
        print(f"Wrote ranking to {out}")
    if not df.empty:
        print(df.head(args.top).to_string(index=False))

    baseline = baseline_score(reference, reference.resolve_tracks(schema))
    try:
        best = select_best(ranked, baseline)
    except NoViableConfiguration as e:
        print(f"No viable configuration: {e}")
        return 1

    print(f"\nBest configuration (score {best.score}, baseline {baseline}):\n")
    print(best.configuration.to_ini())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
