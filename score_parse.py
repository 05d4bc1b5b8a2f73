#!/usr/bin/env python3
# score_parse.py
"""Turn a free-form transcript like "score is ten nine" into exactly two scores.

Run as a script it reads transcript lines on stdin and prints one JSON object
per line, so it can sit behind the recognizer in a shell pipeline.
"""
from __future__ import annotations

import json
import re
import sys
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

# ------------ Word tables ------------
ONE_TO_NINE = {
    "one": 1, "won": 1,
    "two": 2, "to": 2, "too": 2,
    "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9,
}

NUM_WORDS = {
    "zero": 0, "oh": 0, "o": 0,
    **ONE_TO_NINE,
    "ten": 10, "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14,
    "fifteen": 15, "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19,
    "twenty": 20,
    "twentyone": 21, "twenty-one": 21,
}

# Candidates for splitting merged tokens ("twotwo"), longest first
_SPLIT_WORDS = sorted((w for w in NUM_WORDS if "-" not in w), key=len, reverse=True)

TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9-]+")

# A lone digit literal is only taken as a score in this range
MAX_LITERAL_SCORE = 21

HEURISTIC_COMPACT_DIGITS = "split compact digit token"
HEURISTIC_MERGED_TOKEN = "split merged score token"
HEURISTIC_FOUR_DIGITS = "grouped four single digits into two scores"


@dataclass
class NumberParseDebug:
    normalized_tokens: List[str] = field(default_factory=list)
    detected_numbers: List[int] = field(default_factory=list)
    parsed_scores: Optional[Tuple[int, int]] = None
    reason: Optional[str] = None
    heuristic: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "normalized_tokens": list(self.normalized_tokens),
            "detected_numbers": list(self.detected_numbers),
            "parsed_scores": list(self.parsed_scores) if self.parsed_scores else None,
            "reason": self.reason,
            "heuristic": self.heuristic,
        }


def tokenize(text: str) -> List[str]:
    return [t for t in TOKEN_SPLIT_RE.split(str(text or "").lower()) if t]


def split_merged_token(tok: str) -> Optional[Tuple[int, int]]:
    """Split e.g. "twotwo" or "ten-nine" into two number-word values."""
    flat = tok.replace("-", "")
    for word in _SPLIT_WORDS:
        rest = flat[len(word):]
        if flat.startswith(word) and rest in NUM_WORDS:
            return NUM_WORDS[word], NUM_WORDS[rest]
    return None


def parse_with_debug(text: str) -> NumberParseDebug:
    debug = NumberParseDebug(normalized_tokens=tokenize(text))
    tokens = debug.normalized_tokens
    if not tokens:
        debug.reason = "no tokens"
        return debug

    numbers = debug.detected_numbers
    single = len(tokens) == 1
    i = 0
    while i < len(tokens):
        tok = tokens[i]

        # A: digit literals
        if tok.isdigit():
            if single and len(tok) == 2:
                numbers += [int(tok[0]), int(tok[1])]
                debug.heuristic = HEURISTIC_COMPACT_DIGITS
            elif single and len(tok) == 4:
                numbers += [int(tok[:2]), int(tok[2:])]
                debug.heuristic = HEURISTIC_COMPACT_DIGITS
            elif 0 <= int(tok) <= MAX_LITERAL_SCORE:
                numbers.append(int(tok))
            i += 1
            continue

        # B: "twenty" + unit word -> 21..29
        if tok == "twenty" and i + 1 < len(tokens) and tokens[i + 1] in ONE_TO_NINE:
            numbers.append(20 + ONE_TO_NINE[tokens[i + 1]])
            i += 2
            continue

        # C: single number word
        if tok in NUM_WORDS:
            numbers.append(NUM_WORDS[tok])
            i += 1
            continue

        # D: two words the recognizer glued together
        pair = split_merged_token(tok)
        if pair:
            numbers += list(pair)
            debug.heuristic = HEURISTIC_MERGED_TOKEN

        # E: anything else is filler
        i += 1

    # "two zero one one" -> 20 11
    if len(numbers) == 4 and all(0 <= n <= 9 for n in numbers):
        numbers[:] = [numbers[0] * 10 + numbers[1], numbers[2] * 10 + numbers[3]]
        debug.heuristic = HEURISTIC_FOUR_DIGITS

    if len(numbers) != 2:
        debug.reason = f"expected 2 numbers, found {len(numbers)}"
        return debug

    debug.parsed_scores = (numbers[0], numbers[1])
    return debug


def extract_two_scores(text: str) -> Optional[Tuple[int, int]]:
    return parse_with_debug(text).parsed_scores


def emit(obj: dict):
    print(json.dumps(obj, ensure_ascii=False), flush=True)


def process_line(line: str):
    debug = parse_with_debug(line)
    if debug.parsed_scores:
        a, b = debug.parsed_scores
        emit({"type": "SCORES", "a": a, "b": b, "heuristic": debug.heuristic, "raw": line})
    else:
        emit({"type": "NO_PARSE", "reason": debug.reason,
              "numbers": debug.detected_numbers, "raw": line})


def main(stream=sys.stdin):
    for line in stream:
        t = line.strip()
        if not t:
            continue
        process_line(t)


if __name__ == "__main__":
    main()
