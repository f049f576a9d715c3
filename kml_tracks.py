import os
import re
import sys
import json
import bisect
import logging
import argparse
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple, Sequence, Iterable
from datetime import datetime, timedelta, timezone
from haversine import haversine, Unit

logger = logging.getLogger(__name__)

# A KML track file keeps every tag on its own line: a header, then one <when>
# per recorded point, then one <gx:coord> per point, then the closing tags.
# Working line by line is enough, no XML parser is involved.
WHEN_TAG = '<when>'
COORD_TAG = '<gx:coord>'

WHEN_LINE = re.compile(r'^<when>(.*)</when>$')
COORD_LINE = re.compile(r'^<gx:coord>(.*)</gx:coord>$')
WHEN_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'

FILENAME_DATE = re.compile(r'from\s+(\d{4}-\d\d-\d\d)')
ROUTE_NAME_TAG = re.compile(r'<name><!\[CDATA\[(Route[^\]]+)\]\]></name>')


class TrackError(Exception):
    """Base class for errors raised while editing track files."""


class MissingParameterError(TrackError):
    """A command was invoked without one of its required options."""


class TimestampParseError(TrackError, ValueError):
    """A <when> line (or a timestamp given on the command line) could not be parsed."""


class DegenerateDurationError(TrackError, ZeroDivisionError):
    """The track has zero duration, so its time span cannot be rescaled."""


@dataclass
class ParsedTrack:
    """
    A track file split into its four sections.

    ``timestamps`` and ``coordinates`` are parallel: index i of each describes
    the same recorded point and they always have the same length.
    """
    filename: str = ''
    source_date: Optional[str] = None
    header: List[str] = field(default_factory=list)
    timestamps: List[str] = field(default_factory=list)
    coordinates: List[str] = field(default_factory=list)
    footer: List[str] = field(default_factory=list)

    def times(self) -> List[datetime]:
        return [decode_timestamp(line) for line in self.timestamps]

    def points_between(self, lo: int, hi: int) -> 'ParsedTrack':
        """Copy of the track keeping only points lo..hi-1; header and footer pass through."""
        return replace(
            self,
            header=list(self.header),
            timestamps=self.timestamps[lo:hi],
            coordinates=self.coordinates[lo:hi],
            footer=list(self.footer),
        )


# ===== Parsing =====
def date_from_filename(filename: str) -> Optional[str]:
    """Date of a route file ("Route from 2020-03-19 ...") or None when the name has none."""
    match = FILENAME_DATE.search(str(filename))
    return match.group(1) if match else None


def parse_track_lines(lines: Iterable[str], filename: str = '') -> ParsedTrack:
    """
    Split raw KML lines into header, timestamps, coordinates and footer.

    The cursor only ever moves forward. A file without any <when> line ends
    up entirely in the header.

    Args:
        lines: Raw lines of one track file
        filename: Where the lines came from, used for the route date

    Returns:
        ParsedTrack: The sectioned track
    """
    track = ParsedTrack(filename=str(filename), source_date=date_from_filename(filename))
    section = 'header'

    for raw in lines:
        line = raw.strip()

        if section == 'header' and line.startswith(WHEN_TAG):
            section = 'timestamps'
        elif section == 'timestamps' and line.startswith(COORD_TAG):
            section = 'coordinates'
        elif section == 'coordinates' and not line.startswith(COORD_TAG):
            section = 'footer'

        getattr(track, section).append(line)

    logger.debug(
        "Parsed %s: %d header, %d points, %d footer lines",
        filename or '<lines>', len(track.header), len(track.timestamps), len(track.footer),
    )
    return track


def parse_track_file(file_path) -> ParsedTrack:
    """Read and parse a KML track file."""
    with open(file_path, 'r', encoding='utf-8') as f:
        lines = f.read().splitlines()
    return parse_track_lines(lines, filename=str(file_path))


# ===== Timestamps =====
def decode_timestamp(line: str) -> datetime:
    match = WHEN_LINE.match(line.strip())
    if not match:
        raise TimestampParseError(f"Not a <when> line: {line!r}")
    try:
        return datetime.strptime(match.group(1), WHEN_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        raise TimestampParseError(f"Invalid timestamp {match.group(1)!r}, expected YYYY-MM-DDTHH:MM:SS.mmmZ")


def format_timestamp(ts: datetime) -> str:
    # Naive values are taken as UTC; sub-millisecond digits are truncated.
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return (
        f"{ts.year:04d}-{ts.month:02d}-{ts.day:02d}"
        f"T{ts.hour:02d}:{ts.minute:02d}:{ts.second:02d}.{ts.microsecond // 1000:03d}Z"
    )


def encode_timestamp(ts: datetime) -> str:
    return f"<when>{format_timestamp(ts)}</when>"


def parse_cli_timestamp(text: str) -> datetime:
    """Parse a timestamp given as an option, e.g. 2020-03-19T21:30:00.000Z or 2020-03-19 21:30."""
    s = text.strip()
    try:
        ts = datetime.strptime(s, WHEN_FORMAT)
    except ValueError:
        try:
            # fromisoformat only understands a trailing Z on newer interpreters
            ts = datetime.fromisoformat(s[:-1] + '+00:00' if s.endswith('Z') else s)
        except ValueError:
            raise TimestampParseError(f"Invalid timestamp {text!r}, expected e.g. 2020-03-19T21:30:00.000Z")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# ===== Combining and naming =====
def combine_tracks(tracks: Sequence[ParsedTrack]) -> List[str]:
    """
    Header of the first track, every track's timestamps in order, every
    track's coordinates in order, then the footer of the last track.
    """
    if not tracks:
        raise ValueError("combine_tracks needs at least one track")
    lines = list(tracks[0].header)
    for track in tracks:
        lines.extend(track.timestamps)
    for track in tracks:
        lines.extend(track.coordinates)
    lines.extend(tracks[-1].footer)
    return lines


def serialize(lines: Sequence[str]) -> str:
    return '\n'.join(lines)


def route_name(tracks: Sequence[ParsedTrack]) -> str:
    # A file without a date in its name yields "None" here; kept as is.
    return f"Merged from {tracks[0].source_date} to {tracks[-1].source_date}"


def rename_route(text: str, new_name: str) -> str:
    """Replace <name><![CDATA[Route ...]]></name> with the new route name."""
    new_tag = f"<name><![CDATA[{new_name}]]></name>"
    return ROUTE_NAME_TAG.sub(lambda _m: new_tag, text)


# ===== Editing operations =====
def slice_track(track: ParsedTrack, start: Optional[datetime] = None, end: Optional[datetime] = None) -> ParsedTrack:
    """Keep only the points with start <= time <= end (either bound may be omitted)."""
    times = track.times()
    lo = bisect.bisect_left(times, start) if start is not None else 0
    hi = bisect.bisect_right(times, end) if end is not None else len(times)
    hi = max(lo, hi)
    logger.debug("Slice keeps points %d..%d of %d", lo, hi, len(times))
    return track.points_between(lo, hi)


def split_track(track: ParsedTrack, at: datetime) -> Tuple[ParsedTrack, ParsedTrack]:
    """
    Split a track in two at a point in time.

    A point recorded exactly at ``at`` ends up in both halves, so the two
    routes join up on the map.

    Returns:
        Tuple[ParsedTrack, ParsedTrack]: (before, after)
    """
    times = track.times()
    before = track.points_between(0, bisect.bisect_right(times, at))
    after = track.points_between(bisect.bisect_left(times, at), len(times))
    return before, after


def retime_track(track: ParsedTrack, new_start: datetime) -> ParsedTrack:
    """Shift the whole track so that it starts at new_start."""
    times = track.times()
    delta = new_start - times[0]
    logger.debug("Shifting %d points by %s", len(times), delta)
    shifted = track.points_between(0, len(times))
    shifted.timestamps = [encode_timestamp(t + delta) for t in times]
    return shifted


def compress_track_time(track: ParsedTrack, new_end: datetime) -> Tuple[ParsedTrack, float]:
    """
    Rescale the track's time span so it ends at new_end, keeping its start.

    Every point moves to start + (t - start) * factor, where
    factor = (new_end - start) / (old_end - start).

    Returns:
        Tuple[ParsedTrack, float]: The rescaled track and the factor used
    """
    times = track.times()
    start, old_end = times[0], times[-1]
    one_us = timedelta(microseconds=1)
    old_span = (old_end - start) // one_us
    if old_span == 0:
        raise DegenerateDurationError(
            f"Cannot compress {track.filename or 'track'}: first and last timestamps are both {format_timestamp(start)}"
        )
    new_span = (new_end - start) // one_us
    factor = new_span / old_span
    logger.info("Compressing time by a factor of %s", factor)

    # Integer microseconds keep the new end exact.
    rescaled = track.points_between(0, len(times))
    rescaled.timestamps = [
        encode_timestamp(start + timedelta(microseconds=((t - start) // one_us) * new_span // old_span))
        for t in times
    ]
    return rescaled, factor


# ===== Summary =====
def parse_coordinate(line: str) -> Optional[Tuple[float, float]]:
    """(latitude, longitude) of a <gx:coord>lon lat alt</gx:coord> line, or None."""
    match = COORD_LINE.match(line.strip())
    if not match:
        return None
    parts = match.group(1).replace(',', ' ').split()
    if len(parts) < 2:
        return None
    try:
        lon = float(parts[0]); lat = float(parts[1])
    except ValueError:
        return None
    return lat, lon


def summarize_track(track: ParsedTrack) -> Dict[str, Any]:
    times = track.times()
    coords: List[Tuple[float, float]] = []
    for line in track.coordinates:
        c = parse_coordinate(line)
        if c is None:
            logger.warning("Skipping unreadable coordinate line: %s", line)
            continue
        coords.append(c)

    distance_m = 0.0
    for i in range(1, len(coords)):
        distance_m += haversine(coords[i-1], coords[i], unit=Unit.METERS)

    return {
        'filename': os.path.basename(track.filename),
        'points': len(times),
        'start': format_timestamp(times[0]) if times else None,
        'end': format_timestamp(times[-1]) if times else None,
        'duration_s': (times[-1] - times[0]).total_seconds() if times else 0.0,
        'distance_m': distance_m,
    }


# ===== Commands =====
@dataclass
class MergeAll:
    directory: str = 'mytracks'

    def input_files(self) -> List[Path]:
        # Sorted by name: that order is the order of the segments on the route.
        return sorted(Path(self.directory).glob('*.kml'), key=lambda p: p.name)

    def run(self) -> Dict[str, str]:
        files = self.input_files()
        if not files:
            raise TrackError(f"No .kml files found in {self.directory}")
        tracks = [parse_track_file(p) for p in files]
        logger.info("Merging %d tracks from %s", len(tracks), self.directory)
        name = route_name(tracks)
        text = rename_route(serialize(combine_tracks(tracks)), name)
        return {f"{name}.kml": text}


@dataclass
class Slice:
    file: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def run(self) -> Dict[str, str]:
        track = slice_track(parse_track_file(self.file), self.start, self.end)
        return {'output.kml': serialize(combine_tracks([track]))}


@dataclass
class Split:
    file: str
    at: datetime

    def run(self) -> Dict[str, str]:
        before, after = split_track(parse_track_file(self.file), self.at)
        return {
            'output_before.kml': serialize(combine_tracks([before])),
            'output_after.kml': serialize(combine_tracks([after])),
        }


@dataclass
class Retime:
    file: str
    start: datetime

    def run(self) -> Dict[str, str]:
        track = retime_track(parse_track_file(self.file), self.start)
        return {'output.kml': serialize(combine_tracks([track]))}


@dataclass
class CompressTime:
    file: str
    end: datetime

    def run(self) -> Dict[str, str]:
        track, factor = compress_track_time(parse_track_file(self.file), self.end)
        print(f"Compression factor: {factor}")
        return {'output.kml': serialize(combine_tracks([track]))}


@dataclass
class Info:
    file: str

    def run(self) -> Dict[str, str]:
        print(json.dumps(summarize_track(parse_track_file(self.file)), indent=2))
        return {}


COMMANDS = ('merge_all', 'slice', 'split', 'retime', 'compress_time', 'info')


def _require(args: argparse.Namespace, command: str, *names: str) -> None:
    for name in names:
        if getattr(args, name, None) is None:
            raise MissingParameterError(f"{command} requires --{name}")


def build_command(args: argparse.Namespace):
    """Turn parsed options into a command value, checking required options first."""
    command = args.command
    if command == 'merge_all':
        return MergeAll(directory=args.dir)
    if command == 'slice':
        _require(args, command, 'file')
        return Slice(args.file, start=args.start_bound, end=args.to)
    if command == 'split':
        _require(args, command, 'file', 'at')
        return Split(args.file, args.at)
    if command == 'retime':
        _require(args, command, 'file', 'start')
        return Retime(args.file, args.start)
    if command == 'compress_time':
        _require(args, command, 'file', 'end')
        return CompressTime(args.file, args.end)
    if command == 'info':
        _require(args, command, 'file')
        return Info(args.file)
    raise TrackError(f"Unknown command: {command}")


def write_outputs(outputs: Dict[str, str], output_dir: str) -> List[Path]:
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    # Every output goes to a .tmp file first; nothing is renamed into place
    # until all of them have been written.
    staged: List[Tuple[Path, Path]] = []
    try:
        for filename, text in outputs.items():
            out_path = out_dir / filename
            tmp_path = out_path.with_name(out_path.name + '.tmp')
            staged.append((tmp_path, out_path))
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(text)
    except OSError:
        for tmp_path, _ in staged:
            if tmp_path.is_file():
                tmp_path.unlink()
        raise

    written = []
    for tmp_path, out_path in staged:
        os.replace(tmp_path, out_path)
        written.append(out_path)
    return written


def _timestamp_arg(text: str) -> datetime:
    try:
        return parse_cli_timestamp(text)
    except TimestampParseError as e:
        raise argparse.ArgumentTypeError(str(e))


def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Merge, slice, split and retime KML track files.")
    parser.add_argument('command', nargs='?', default='merge_all', choices=COMMANDS, help='Operation to run (default: merge_all)')
    parser.add_argument('--dir', dest='dir', default='mytracks', help='Directory of .kml files to merge (default: mytracks)')
    parser.add_argument('--output-dir', dest='output_dir', default='.', help='Where output files are written (default: current directory)')
    parser.add_argument('--file', dest='file', help='Input KML file for single-file commands')
    parser.add_argument('--from', dest='start_bound', type=_timestamp_arg, help='slice: drop points before this time')
    parser.add_argument('--to', dest='to', type=_timestamp_arg, help='slice: drop points after this time')
    parser.add_argument('--at', dest='at', type=_timestamp_arg, help='split: time to split the track at')
    parser.add_argument('--start', dest='start', type=_timestamp_arg, help='retime: new start time of the track')
    parser.add_argument('--end', dest='end', type=_timestamp_arg, help='compress_time: new end time of the track')
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose logging')
    return parser


def main(argv: Optional[List[str]] = None):
    args = make_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    try:
        command = build_command(args)
        outputs = command.run()
        for out_path in write_outputs(outputs, args.output_dir):
            print(f"Saved KML: {out_path}")
    except (TrackError, OSError) as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
