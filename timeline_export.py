#!/usr/bin/env python3
"""Export a game's score history as time-coded overlay files.

Produces a CSV timeline, SRT and ASS subtitle tracks that can be burned into a
recording of the game, and a short notes file with ffmpeg commands.
"""
from __future__ import annotations

import argparse
import csv
import datetime as dt
import io
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from game_state import ScoreEvent

MIN_CUE_MS = 700
MIN_SESSION_MS = 1_000

CSV_FIELDS = ["relative_ms", "wall_clock", "score_a", "score_b", "source"]

ASS_HEADER = """[Script Info]
ScriptType: v4.00+
PlayResX: 1920
PlayResY: 1080
WrapStyle: 2
ScaledBorderAndShadow: yes

[V4+ Styles]
Format: Name,Fontname,Fontsize,PrimaryColour,SecondaryColour,OutlineColour,BackColour,Bold,Italic,Underline,StrikeOut,ScaleX,ScaleY,Spacing,Angle,BorderStyle,Outline,Shadow,Alignment,MarginL,MarginR,MarginV,Encoding
Style: Score,Arial,56,&H00FFFFFF,&H000000FF,&H00111111,&H78000000,1,0,0,0,100,100,0,0,1,3,0,8,40,40,54,1

[Events]
Format: Layer,Start,End,Style,Name,MarginL,MarginR,MarginV,Effect,Text
"""


@dataclass(frozen=True)
class TimelinePoint:
    timestamp_ms: int
    score_a: int
    score_b: int
    source: str


@dataclass(frozen=True)
class ExportPaths:
    csv_path: str
    srt_path: str
    ass_path: str
    notes_path: str


def _ms(seconds: float) -> int:
    return int(round(float(seconds) * 1000))


def build_timeline_points(history: Sequence[ScoreEvent], session_start: float,
                          current_a: int, current_b: int) -> List[TimelinePoint]:
    start_ms = _ms(session_start)
    if not history:
        return [TimelinePoint(start_ms, current_a, current_b, "INITIAL")]

    first = history[0]
    points = [TimelinePoint(start_ms, first.old_score_a, first.old_score_b, "INITIAL")]
    for e in history:
        points.append(TimelinePoint(
            timestamp_ms=max(_ms(e.timestamp), start_ms),
            score_a=e.new_score_a,
            score_b=e.new_score_b,
            source=e.source.value,
        ))
    return points


def format_srt_time(ms: int) -> str:
    ms = max(0, int(ms))
    return "%02d:%02d:%02d,%03d" % (ms // 3_600_000, ms % 3_600_000 // 60_000,
                                    ms % 60_000 // 1_000, ms % 1_000)


def format_ass_time(ms: int) -> str:
    ms = max(0, int(ms))
    return "%01d:%02d:%02d.%02d" % (ms // 3_600_000, ms % 3_600_000 // 60_000,
                                    ms % 60_000 // 1_000, ms % 1_000 // 10)


def escape_ass_text(value: str) -> str:
    return value.replace("\\", "\\\\").replace("{", "\\{").replace("}", "\\}")


def _cues(points: Sequence[TimelinePoint], session_start: float, export_time: float):
    """Yield (point, start_ms, end_ms) relative to the session start."""
    start_ms = _ms(session_start)
    duration = max(_ms(export_time) - start_ms, MIN_SESSION_MS)
    for idx, p in enumerate(points):
        begin = max(p.timestamp_ms - start_ms, 0)
        if idx + 1 < len(points):
            nxt = max(points[idx + 1].timestamp_ms - start_ms, 0)
        else:
            nxt = duration
        yield p, begin, max(nxt, begin + MIN_CUE_MS)


def render_csv(points: Sequence[TimelinePoint], session_start: float) -> str:
    start_ms = _ms(session_start)
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=CSV_FIELDS, lineterminator="\n")
    writer.writeheader()
    for p in points:
        wall = dt.datetime.fromtimestamp(p.timestamp_ms / 1000)
        writer.writerow({
            "relative_ms": max(p.timestamp_ms - start_ms, 0),
            "wall_clock": wall.strftime("%Y-%m-%d %H:%M:%S.") + f"{p.timestamp_ms % 1000:03d}",
            "score_a": p.score_a,
            "score_b": p.score_b,
            "source": p.source,
        })
    return buf.getvalue()


def render_srt(points, session_start, export_time, team_a_name, team_b_name) -> str:
    blocks = []
    for idx, (p, begin, end) in enumerate(_cues(points, session_start, export_time), start=1):
        blocks.append(
            f"{idx}\n{format_srt_time(begin)} --> {format_srt_time(end)}\n"
            f"{team_a_name} {p.score_a} - {p.score_b} {team_b_name} ({p.source})\n\n"
        )
    return "".join(blocks)


def render_ass(points, session_start, export_time, team_a_name, team_b_name) -> str:
    team_a = escape_ass_text(team_a_name)
    team_b = escape_ass_text(team_b_name)
    lines = [ASS_HEADER]
    for p, begin, end in _cues(points, session_start, export_time):
        lines.append(
            f"Dialogue: 0,{format_ass_time(begin)},{format_ass_time(end)},Score,,0,0,30,,"
            f"{team_a} {p.score_a} - {p.score_b} {team_b}\\N[{escape_ass_text(p.source)}]\n"
        )
    return "".join(lines)


def render_notes(paths: ExportPaths, team_a_name: str, team_b_name: str) -> str:
    return "\n".join([
        "Voice Score - Video Overlay Notes",
        f"Teams: {team_a_name} vs {team_b_name}",
        "",
        "Exported timeline files:",
        f"CSV: {paths.csv_path}",
        f"SRT: {paths.srt_path}",
        f"ASS: {paths.ass_path}",
        "",
        "Example ffmpeg burn-in command:",
        "ffmpeg -i input.mp4 -vf ass=score_timeline_xxx.ass -c:a copy output_with_score.mp4",
        "Fallback if ASS is unavailable:",
        "ffmpeg -i input.mp4 -vf subtitles=score_timeline_xxx.srt -c:a copy output_with_score.mp4",
        "",
        "Tip: Keep your source recording untouched and generate overlays as separate outputs.",
        "",
    ])


def export_timeline_files(out_dir, history: Sequence[ScoreEvent], session_start: float,
                          export_time: float, current_a: int, current_b: int,
                          team_a_name: str, team_b_name: str) -> ExportPaths:
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    stamp = dt.datetime.fromtimestamp(export_time).strftime("%Y%m%d_%H%M%S")
    base = out / f"score_timeline_{stamp}"
    paths = ExportPaths(
        csv_path=str(base.with_suffix(".csv")),
        srt_path=str(base.with_suffix(".srt")),
        ass_path=str(base.with_suffix(".ass")),
        notes_path=str(out / f"score_timeline_{stamp}_video_notes.txt"),
    )

    points = build_timeline_points(history, session_start, current_a, current_b)
    Path(paths.csv_path).write_text(render_csv(points, session_start), encoding="utf-8")
    Path(paths.srt_path).write_text(
        render_srt(points, session_start, export_time, team_a_name, team_b_name), encoding="utf-8")
    Path(paths.ass_path).write_text(
        render_ass(points, session_start, export_time, team_a_name, team_b_name), encoding="utf-8")
    Path(paths.notes_path).write_text(render_notes(paths, team_a_name, team_b_name), encoding="utf-8")
    return paths


def main(argv=None):
    ap = argparse.ArgumentParser(description="Export a saved score history as CSV/SRT/ASS overlays.")
    ap.add_argument("--history", required=True, help="JSON dump from GET /api/history")
    ap.add_argument("--output-dir", default="exports", help="Directory for the exported files (default: exports)")
    args = ap.parse_args(argv)

    try:
        with open(args.history, encoding="utf-8") as f:
            data = json.load(f)
        game = data["game"]
        history = [ScoreEvent.from_dict(e) for e in game.get("history") or []]
        session_start = float(data["session_start"])
    except (OSError, ValueError, KeyError, TypeError) as e:
        print(f"error reading history: {e}", file=sys.stderr)
        sys.exit(1)

    export_time = max([session_start] + [e.timestamp for e in history])
    try:
        paths = export_timeline_files(
            args.output_dir, history, session_start, export_time,
            int(game.get("team_a_score", 0)), int(game.get("team_b_score", 0)),
            str(game.get("team_a_name", "A")), str(game.get("team_b_name", "B")),
        )
    except OSError as e:
        print(f"error writing output: {e}", file=sys.stderr)
        sys.exit(2)
    for p in (paths.csv_path, paths.srt_path, paths.ass_path, paths.notes_path):
        print(f"Wrote {p}")


if __name__ == "__main__":
    main()
