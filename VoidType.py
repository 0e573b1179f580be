#!/usr/bin/env python3

"""
Void Typeface Engine
Renders text in a modular grid typeface: every glyph is a grid of stroke modules
(5x5 for letters and digits, 3x5 for a space), each one of six shapes in four
rotations, stroked as a single line, parallel stripes, dashes, or striped dashes.
Output goes to a raster preview (PNG) or a vector document (SVG) from the same
stroke primitives, so the two stay geometrically identical.

Table of Contents
   1. Setup
   2. Glyph Codes
   3. Adaptive Dashes
   4. Endpoints and Connections
   5. Stroke Primitives
   6. Module Geometry
   7. Random Variation
   8. Parameters
   9. Text Layout
  10. Outputs
  11. Rendering
  12. Commands
"""

# ----------------------1. Setup----------------------------

import math
import os
import random
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cache
from typing import Iterator, Optional, Union

import toml
from PIL import Image, ImageDraw
import drawsvg as svg

from VoidAlphabet import ALPHABET, ALTERNATES, GLYPH_COLS, REPEATED_SPACE_COLS, ROWS, SPACE_COLS

# Angular constants:
PI = math.pi
PI_HALF = PI / 2

FF = 255
XY = tuple[float, float]


class Color(Enum):
    WHITE, BLACK = (FF, FF, FF), (0, 0, 0)
    RED, GREEN, BLUE = (FF, 0, 0), (0, FF, 0), (0, 0, FF)
    GRID_GREY = (0x33, 0x33, 0x33)
    CONNECTION_BLUE = (0, 0x88, FF)  # junction markers
    ENDPOINT_RED = (FF, 0, 0x44)  # stroke end markers

    @staticmethod
    @cache
    def to_pil(col_spec):
        return col_spec.value if isinstance(col_spec, Color) else col_spec

    @classmethod
    def to_str(cls, col):
        if isinstance(col, cls):
            col = col.value
        if isinstance(col, tuple):
            return '#{:02x}{:02x}{:02x}'.format(*col[:3])
        return col

    @classmethod
    def from_str(cls, color: str):
        if matches := re.match(r'^#([0-9a-fA-F]{6})$', color):
            hex_digits = matches.group(1)
            return tuple(int(hex_digits[i:i + 2], 16) for i in (0, 2, 4))
        if matches := re.match(r'^#([0-9a-fA-F]{3})$', color):
            return tuple(int(d * 2, 16) for d in matches.group(1))
        return getattr(cls, color.upper(), color)


class OutFormat(Enum):
    PNG, SVG = 'png', 'svg'


DEBUG = False


# ----------------------2. Glyph Codes----------------------------


class Side(Enum):
    TOP, RIGHT, BOTTOM, LEFT = 0, 1, 2, 3

    def rotated(self, quarter_turns: int):
        return Side((self.value + quarter_turns) % 4)

    @property
    def opposite(self):
        return self.rotated(2)

    @property
    def offset(self) -> tuple[int, int]:
        """(col, row) step to the neighboring cell across this side"""
        return SIDE_OFFSETS[self]


SIDE_OFFSETS = {Side.TOP: (0, -1), Side.RIGHT: (1, 0), Side.BOTTOM: (0, 1), Side.LEFT: (-1, 0)}


class ModuleType(Enum):
    EMPTY, STRAIGHT, CENTRAL, JOINT, LINK, ROUND, BEND = 'E', 'S', 'C', 'J', 'L', 'R', 'B'

    @property
    def is_curve(self):
        return self in (ModuleType.ROUND, ModuleType.BEND)


BASE_EXITS = {
    ModuleType.EMPTY: frozenset(),
    ModuleType.STRAIGHT: frozenset({Side.TOP, Side.BOTTOM}),
    ModuleType.CENTRAL: frozenset({Side.TOP, Side.BOTTOM}),
    ModuleType.JOINT: frozenset({Side.TOP, Side.BOTTOM, Side.RIGHT}),
    ModuleType.LINK: frozenset({Side.TOP, Side.RIGHT}),
    ModuleType.ROUND: frozenset({Side.TOP, Side.RIGHT}),
    ModuleType.BEND: frozenset({Side.TOP, Side.RIGHT}),
}


@cache
def exits_of(module_type: ModuleType, rotation: int) -> frozenset:
    """Sides where the module's stroke ends, after rotating it clockwise by quarter turns."""
    return frozenset(side.rotated(rotation) for side in BASE_EXITS[module_type])


class MalformedGlyphCode(ValueError):
    pass


class MissingGlyph(KeyError):
    pass


@dataclass(frozen=True)
class Module:
    type: ModuleType = ModuleType.EMPTY
    rotation: int = 0

    @property
    def is_empty(self):
        return self.type == ModuleType.EMPTY

    @property
    def exits(self) -> frozenset:
        return exits_of(self.type, self.rotation)

    @property
    def tag(self):
        return f'{self.type.value}{self.rotation}'


EMPTY_MODULE = Module()


@dataclass(frozen=True)
class Grid:
    cols: int
    rows: int
    cells: tuple[Module, ...]
    """row-major, col varying fastest"""

    @classmethod
    def empty(cls, cols: int, rows: int = ROWS):
        return cls(cols, rows, (EMPTY_MODULE,) * (cols * rows))

    def at(self, col: int, row: int) -> Module:
        return self.cells[row * self.cols + col]

    def in_bounds(self, col: int, row: int):
        return 0 <= col < self.cols and 0 <= row < self.rows

    def neighbor(self, col: int, row: int, side: Side) -> Optional[Module]:
        """The module across the given side, or None off the grid"""
        dc, dr = side.offset
        if self.in_bounds(col + dc, row + dr):
            return self.at(col + dc, row + dr)
        return None

    def __iter__(self) -> Iterator[tuple[int, int, Module]]:
        for row in range(self.rows):
            for col in range(self.cols):
                yield col, row, self.at(col, row)

    @property
    def is_blank(self):
        return all(m.is_empty for m in self.cells)


def parse_glyph(code: str, cols: int = GLYPH_COLS, rows: int = ROWS) -> Grid:
    """Reads a glyph code of 2*cols*rows characters: a module tag then a rotation digit per cell.
    Rotation digits outside 0-3 are rejected rather than wrapped."""
    expected = 2 * cols * rows
    if not isinstance(code, str) or len(code) != expected:
        got = len(code) if isinstance(code, str) else type(code).__name__
        raise MalformedGlyphCode(f'Expected {expected} characters for a {cols}x{rows} glyph, got {got}')
    cells = []
    for i in range(0, expected, 2):
        tag, digit = code[i], code[i + 1]
        try:
            module_type = ModuleType(tag)
        except ValueError:
            raise MalformedGlyphCode(f'Unknown module tag {tag!r} in cell {i // 2}') from None
        if digit not in ('0', '1', '2', '3'):
            raise MalformedGlyphCode(f'Rotation {digit!r} out of range in cell {i // 2}')
        cells.append(Module(module_type, int(digit)))
    return Grid(cols, rows, tuple(cells))


def serialize_glyph(grid: Grid) -> str:
    return ''.join(m.tag for m in grid.cells)


class Alphabet:
    """Glyph code lookup: a base code per character, plus numbered alternates (1 and up)."""

    def __init__(self, glyphs: dict[str, str] = None, alternates: dict[str, list[str]] = None):
        self.glyphs = dict(ALPHABET if glyphs is None else glyphs)
        self.alternates = {k: list(v) for k, v in (ALTERNATES if alternates is None else alternates).items()}

    def key_for(self, char: str):
        if char in self.glyphs:
            return char
        if char.upper() in self.glyphs:
            return char.upper()
        raise MissingGlyph(char)

    def __contains__(self, char: str):
        return char in self.glyphs or char.upper() in self.glyphs

    def code_for(self, char: str, alternate: int = None) -> str:
        key = self.key_for(char)
        if alternate:
            options = self.alternates.get(key, [])
            if 0 < alternate <= len(options):
                return options[alternate - 1]
        return self.glyphs[key]

    def alternate_count(self, char: str) -> int:
        return len(self.alternates.get(self.key_for(char), [])) if char in self else 0

    def with_glyph(self, char: str, code: str, alternate: int = None):
        """A copy with one glyph (or one of its alternates) replaced, as an editor would save it."""
        result = Alphabet(self.glyphs, self.alternates)
        if alternate:
            options = result.alternates.setdefault(char, [])
            while len(options) < alternate:
                options.append(result.glyphs.get(char, code))
            options[alternate - 1] = code
        else:
            result.glyphs[char] = code
        return result


# ----------------------3. Adaptive Dashes----------------------------


@dataclass(frozen=True)
class AdaptiveDash:
    dash_length: float
    gap_length: float
    dash_count: int

    @property
    def offset(self):
        """Dash offset that opens and closes the segment on a half dash"""
        return self.dash_length / 2


def round_half_up(x: float) -> int:
    return math.floor(x + 0.5)


def adaptive_dash(length: float, dash_len: float, gap_len: float) -> AdaptiveDash:
    """Fits a dash/gap pair to a segment so that (count - 1) periods span it exactly."""
    if length <= dash_len or dash_len + gap_len <= 0:
        return AdaptiveDash(length, 0.0, 1)
    dash_count = max(2, round_half_up(length / (dash_len + gap_len)) + 1)
    gap = length / (dash_count - 1) - dash_len
    if gap < 0 and dash_count > 2:
        dash_count -= 1
        gap = length / (dash_count - 1) - dash_len
    return AdaptiveDash(dash_len, max(gap, 0.0), dash_count)


# ----------------------4. Endpoints and Connections----------------------------


@dataclass(frozen=True)
class Endpoint:
    col: int
    row: int
    side: Side


@dataclass(frozen=True)
class Connection:
    col1: int
    row1: int
    side1: Side
    col2: int
    row2: int
    side2: Side

    @property
    def key(self):
        return tuple(sorted(((self.col1, self.row1), (self.col2, self.row2))))

    def involves(self, col: int, row: int, side: Side):
        return (col, row, side) in ((self.col1, self.row1, self.side1), (self.col2, self.row2, self.side2))


@dataclass(frozen=True)
class GlyphAnalysis:
    endpoints: tuple[Endpoint, ...] = ()
    connections: tuple[Connection, ...] = ()

    def endpoint_sides(self, col: int, row: int) -> frozenset:
        return frozenset(e.side for e in self.endpoints if e.col == col and e.row == row)

    def is_endpoint(self, col: int, row: int, side: Side):
        return Endpoint(col, row, side) in self.endpoints

    def is_connected(self, col: int, row: int, side: Side):
        return any(c.involves(col, row, side) for c in self.connections)


NO_ANALYSIS = GlyphAnalysis()


def _joins(module: Module, neighbor: Module, side: Side):
    facing = side.opposite
    if facing in neighbor.exits:
        return True
    # angled junction: both strokes leave through another common side
    if any(s in neighbor.exits for s in module.exits if s != facing):
        return True
    return module.type.is_curve and neighbor.type.is_curve


def modules_connect(module: Module, neighbor: Module, side: Side):
    """Whether strokes continue across the edge on `side` of `module`, judged from either cell."""
    return _joins(module, neighbor, side) or _joins(neighbor, module, side.opposite)


def analyze_glyph(grid: Grid) -> GlyphAnalysis:
    """Classifies every exit side of every module as an Endpoint or part of a Connection.
    An exit facing another module always joins it; only exits onto blank cells or off the grid end."""
    endpoints, connections, seen = [], [], set()
    for col, row, module in grid:
        if module.is_empty:
            continue
        exits = module.exits
        loose = []
        for side in Side:
            neighbor = grid.neighbor(col, row, side)
            if neighbor is None or neighbor.is_empty:
                if side in exits:
                    (loose if module.type.is_curve else endpoints).append(Endpoint(col, row, side))
                continue
            if modules_connect(module, neighbor, side):
                dc, dr = side.offset
                conn = Connection(col, row, side, col + dc, row + dr, side.opposite)
                if conn.key not in seen:
                    seen.add(conn.key)
                    connections.append(conn)
        endpoints.extend(loose)
    return GlyphAnalysis(tuple(endpoints), tuple(connections))


def side_midpoint(col: int, row: int, side: Side, module_size: float) -> XY:
    """Midpoint of a cell side, relative to the glyph's top-left corner"""
    half = module_size / 2
    dc, dr = side.offset
    return (col + 0.5) * module_size + dc * half, (row + 0.5) * module_size + dr * half


def stroke_end_point(module: Module, side: Side, module_size: float, stem: float) -> XY:
    """Where a single-line stroke reaches the given side, relative to the module center."""
    w = h = module_size
    q = stem / 4
    local = side.rotated(-module.rotation)
    t = module.type
    ends = {}
    if t in (ModuleType.STRAIGHT, ModuleType.JOINT, ModuleType.LINK):
        ends = {Side.TOP: (-w / 2 + q, -h / 2), Side.BOTTOM: (-w / 2 + q, h / 2)}
        if t == ModuleType.JOINT:
            ends[Side.RIGHT] = (w / 2, 0)
        elif t == ModuleType.LINK:
            ends[Side.RIGHT] = (w / 2, h / 2 - q)
    elif t == ModuleType.CENTRAL:
        ends = {Side.TOP: (0, -h / 2), Side.BOTTOM: (0, h / 2)}
    elif t.is_curve:
        r = w - q if t == ModuleType.ROUND else q
        ends = {Side.TOP: (w / 2 - r, -h / 2), Side.RIGHT: (w / 2, -h / 2 + r)}
    dc, dr = local.offset
    x, y = ends.get(local, (dc * w / 2, dr * h / 2))
    return rotate_xy(x, y, module.rotation)


# ----------------------5. Stroke Primitives----------------------------


class LineCap(Enum):
    BUTT, ROUND, SQUARE = 'butt', 'round', 'square'


class LineJoin(Enum):
    MITER, ROUND = 'miter', 'round'


def rotate_xy(x: float, y: float, quarter_turns: int) -> XY:
    """Rotates clockwise on screen (y pointing down) about the origin."""
    q = quarter_turns % 4
    if q == 1:
        return -y, x
    if q == 2:
        return -x, -y
    if q == 3:
        return y, -x
    return x, y


def lerp(a: XY, b: XY, t: float) -> XY:
    return a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t


@dataclass(frozen=True)
class Dash:
    dash: float
    gap: float
    offset: float = 0.0
    """distance into the pattern at which the stroke starts"""

    @classmethod
    def fitted(cls, length: float, dash_len: float, gap_len: float, half_phase=True):
        fit = adaptive_dash(length, dash_len, gap_len)
        return cls(fit.dash_length, fit.gap_length, fit.offset if half_phase else 0.0)

    @property
    def array(self):
        return self.dash, self.gap

    def scaled(self, k: float):
        return Dash(self.dash * k, self.gap * k, self.offset * k)

    def intervals(self, length: float) -> Iterator[tuple[float, float]]:
        """Stretches of [0, length] inked by this pattern.
        Zero-length dashes come back as single points, which still carry caps."""
        period = self.dash + self.gap
        if self.gap <= 0 or period <= 0:
            yield 0.0, length
            return
        s = -(self.offset % period)
        while s <= length:
            a, b = max(s, 0.0), min(s + self.dash, length)
            if b - a > 1e-9 or (self.dash <= 0 and s >= 0):
                yield a, b
            s += period


@dataclass(frozen=True)
class Polyline:
    points: tuple[XY, ...]
    width: float
    cap: LineCap = LineCap.BUTT
    join: LineJoin = LineJoin.MITER
    dash: Dash = None

    @property
    def length(self):
        return sum(math.dist(a, b) for a, b in zip(self.points, self.points[1:]))

    def rotated(self, quarter_turns: int):
        return replace(self, points=tuple(rotate_xy(x, y, quarter_turns) for x, y in self.points))

    def translated(self, dx: float, dy: float):
        return replace(self, points=tuple((x + dx, y + dy) for x, y in self.points))

    def scaled(self, k: float):
        return replace(self, points=tuple((x * k, y * k) for x, y in self.points), width=self.width * k,
                       dash=self.dash.scaled(k) if self.dash else None)

    def sliced(self, s0: float, s1: float):
        """The undashed stretch between two distances along the path"""
        pts = []
        walked = 0.0
        for a, b in zip(self.points, self.points[1:]):
            seg = math.dist(a, b)
            lo, hi = max(s0 - walked, 0.0), min(s1 - walked, seg)
            if seg > 0 and lo <= hi:
                for p in (lerp(a, b, lo / seg), lerp(a, b, hi / seg)):
                    if not pts or pts[-1] != p:
                        pts.append(p)
            walked += seg
        if len(pts) < 2:
            pts = [pts[0] if pts else self.points[0]] * 2
        return replace(self, points=tuple(pts), dash=None)

    def dash_pieces(self) -> list:
        if self.dash is None:
            return [self]
        return [self.sliced(a, b) for a, b in self.dash.intervals(self.length)]


@dataclass(frozen=True)
class Arc:
    """Circular arc swept clockwise on screen, from start to end angle (radians)"""
    cx: float
    cy: float
    r: float
    start: float
    end: float
    width: float
    cap: LineCap = LineCap.BUTT
    dash: Dash = None

    @property
    def sweep(self):
        return self.end - self.start

    @property
    def length(self):
        return self.r * self.sweep

    def point_at(self, angle: float) -> XY:
        return self.cx + self.r * math.cos(angle), self.cy + self.r * math.sin(angle)

    @property
    def start_point(self):
        return self.point_at(self.start)

    @property
    def end_point(self):
        return self.point_at(self.end)

    def rotated(self, quarter_turns: int):
        cx, cy = rotate_xy(self.cx, self.cy, quarter_turns)
        turn = (quarter_turns % 4) * PI_HALF
        return replace(self, cx=cx, cy=cy, start=self.start + turn, end=self.end + turn)

    def translated(self, dx: float, dy: float):
        return replace(self, cx=self.cx + dx, cy=self.cy + dy)

    def scaled(self, k: float):
        return replace(self, cx=self.cx * k, cy=self.cy * k, r=self.r * k, width=self.width * k,
                       dash=self.dash.scaled(k) if self.dash else None)

    def sliced(self, s0: float, s1: float):
        return replace(self, start=self.start + s0 / self.r, end=self.start + s1 / self.r, dash=None)

    def dash_pieces(self) -> list:
        if self.dash is None:
            return [self]
        return [self.sliced(a, b) for a, b in self.dash.intervals(self.length)]


Primitive = Union[Polyline, Arc]


# ----------------------6. Module Geometry----------------------------


class StrokeStyle(Enum):
    SOLID, STRIPES, DASH, STRIPES_DASH = 'fill', 'stripes', 'dash', 'sd'

    @property
    def is_dashed(self):
        return self in (StrokeStyle.DASH, StrokeStyle.STRIPES_DASH)

    @property
    def is_single(self):
        return self in (StrokeStyle.SOLID, StrokeStyle.DASH)


@dataclass(frozen=True)
class StrokeOptions:
    style: StrokeStyle = StrokeStyle.SOLID
    stroke_count: int = 1
    stroke_gap_ratio: float = 1.0
    dash_length: float = 0.10
    """dash length as a fraction of the dash unit (stem for Dash, strand width for StripesDash)"""
    gap_length: float = 0.30
    dash_chess: bool = False
    """alternate strands start on a half dash and on a full dash"""
    rounded_caps: bool = False
    close_ends: bool = False

    @property
    def shortens(self):
        return self.rounded_caps or self.close_ends

    @property
    def cap(self):
        return LineCap.ROUND if self.rounded_caps else LineCap.BUTT

    @property
    def close_cap(self):
        return LineCap.ROUND if self.rounded_caps else LineCap.SQUARE

    @property
    def join(self):
        return LineJoin.ROUND if self.rounded_caps else LineJoin.MITER


MIN_RADIUS = 0.1
MIN_WIDTH = 0.1


@dataclass(frozen=True)
class Strands:
    """Parallel copies of a module's path, filling a band stem/2 wide"""
    count: int
    width: float
    gap: float

    @classmethod
    def for_stroke(cls, stem: float, opts: StrokeOptions):
        band = stem / 2
        if opts.style.is_single or opts.stroke_count <= 1:
            return cls(1, max(band, MIN_WIDTH), 0.0)
        n = opts.stroke_count
        gap = band / (n * (opts.stroke_gap_ratio + 1) - 1)
        return cls(n, max(gap * opts.stroke_gap_ratio, MIN_WIDTH), gap)

    @property
    def pitch(self):
        return self.width + self.gap

    @property
    def band(self):
        return self.count * self.width + (self.count - 1) * self.gap

    def offset(self, i: int):
        """From the band's leading edge to the center of strand i"""
        return self.width / 2 + i * self.pitch


def _span(a: float, b: float):
    """Keeps a shortened interval from turning inside out."""
    if a <= b:
        return a, b
    mid = (a + b) / 2
    return mid, mid


@dataclass(frozen=True)
class ModuleSketch:
    """Unrotated drawing frame of one module, centered on the origin"""
    opts: StrokeOptions
    strands: Strands
    stem: float
    w: float
    h: float
    ends: frozenset = frozenset()
    """endpoint sides, in the unrotated frame"""

    def cut(self, side: Side):
        return self.strands.width / 2 if self.opts.shortens and side in self.ends else 0.0

    def closes(self, side: Side):
        return self.opts.close_ends and self.strands.count > 1 and side in self.ends

    def dash_for(self, length: float, i: int = 0) -> Optional[Dash]:
        style = self.opts.style
        if not style.is_dashed:
            return None
        unit = self.stem if style == StrokeStyle.DASH else self.strands.width
        half_phase = not self.opts.dash_chess or i % 2 == 0
        return Dash.fitted(length, unit * self.opts.dash_length, unit * self.opts.gap_length, half_phase)

    def line(self, points, i: int = 0) -> Polyline:
        result = Polyline(tuple(points), self.strands.width, self.opts.cap, self.opts.join)
        return replace(result, dash=self.dash_for(result.length, i))

    def arc(self, cx: float, cy: float, r: float, start: float, end: float, i: int = 0) -> Arc:
        result = Arc(cx, cy, r, start, end, self.strands.width, self.opts.cap)
        return replace(result, dash=self.dash_for(result.length, i))

    def closing(self, a: XY, b: XY) -> Polyline:
        result = Polyline((a, b), self.strands.width, self.opts.close_cap, self.opts.join)
        if self.opts.style == StrokeStyle.STRIPES_DASH:
            result = replace(result, dash=self.dash_for(result.length))
        return result


def _verticals(k: ModuleSketch, x_edge: float) -> tuple[list, list[float]]:
    """Full-height strands starting from the band edge at x_edge, with their closing strokes."""
    y0, y1 = _span(-k.h / 2 + k.cut(Side.TOP), k.h / 2 - k.cut(Side.BOTTOM))
    xs = [x_edge + k.strands.offset(i) for i in range(k.strands.count)]
    result = [k.line(((x, y0), (x, y1)), i) for i, x in enumerate(xs)]
    if k.closes(Side.TOP):
        result.append(k.closing((xs[0], y0), (xs[-1], y0)))
    if k.closes(Side.BOTTOM):
        result.append(k.closing((xs[0], y1), (xs[-1], y1)))
    return result, xs


def straight_geometry(k: ModuleSketch):
    return _verticals(k, -k.w / 2)[0]


def central_geometry(k: ModuleSketch):
    return _verticals(k, -k.strands.band / 2)[0]


def joint_geometry(k: ModuleSketch):
    s = k.strands
    result, xs = _verticals(k, -k.w / 2)
    x0, x1 = _span(xs[-1], k.w / 2 - k.cut(Side.RIGHT))
    ys = [-s.band / 2 + s.offset(s.count - 1 - i) for i in range(s.count)]
    result += [k.line(((x0, y), (x1, y)), i) for i, y in enumerate(ys)]
    if k.closes(Side.RIGHT):
        result.append(k.closing((x1, ys[0]), (x1, ys[-1])))
    return result


def link_geometry(k: ModuleSketch):
    s = k.strands
    y_top = -k.h / 2 + k.cut(Side.TOP)
    x_end = k.w / 2 - k.cut(Side.RIGHT)
    result, corners = [], []
    for i in range(s.count):
        x = -k.w / 2 + s.offset(i)
        y = k.h / 2 - s.band + s.offset(s.count - 1 - i)
        corners.append((x, y))
        result.append(k.line(((x, min(y_top, y)), (x, y), (max(x_end, x), y)), i))
    if k.closes(Side.TOP):
        result.append(k.closing((corners[0][0], y_top), (corners[-1][0], y_top)))
    if k.closes(Side.RIGHT):
        result.append(k.closing((x_end, corners[0][1]), (x_end, corners[-1][1])))
    return result


def _quarter_arcs(k: ModuleSketch, reach: float):
    """Concentric quarter arcs about the top-right corner; strand 0 has radius reach - width/2."""
    s = k.strands
    cx, cy = k.w / 2, -k.h / 2
    floor_r = max(s.width / 2, MIN_RADIUS)
    result, rims = [], []
    for j in range(s.count):
        r = max(reach - s.offset(j), floor_r)
        a0, a1 = _span(PI_HALF + k.cut(Side.RIGHT) / r, PI - k.cut(Side.TOP) / r)
        arc = k.arc(cx, cy, r, a0, a1, j)
        result.append(arc)
        rims.append(arc)
    if k.closes(Side.RIGHT):
        result.append(k.closing(rims[0].start_point, rims[-1].start_point))
    if k.closes(Side.TOP):
        result.append(k.closing(rims[0].end_point, rims[-1].end_point))
    return result


def round_geometry(k: ModuleSketch):
    return _quarter_arcs(k, k.w)


def bend_geometry(k: ModuleSketch):
    return _quarter_arcs(k, k.strands.band)


GEOMETRY_BY_TYPE = {
    ModuleType.STRAIGHT: straight_geometry,
    ModuleType.CENTRAL: central_geometry,
    ModuleType.JOINT: joint_geometry,
    ModuleType.LINK: link_geometry,
    ModuleType.ROUND: round_geometry,
    ModuleType.BEND: bend_geometry,
}


def module_geometry(module_type: ModuleType, rotation: int, opts: StrokeOptions, stem: float,
                    w: float, h: float, endpoint_sides=None) -> list[Primitive]:
    """Stroke primitives for one module, centered on the origin.
    endpoint_sides are grid-frame sides where the stroke terminates."""
    if module_type == ModuleType.EMPTY:
        return []
    ends = frozenset(side.rotated(-rotation) for side in endpoint_sides or ())
    sketch = ModuleSketch(opts, Strands.for_stroke(stem, opts), stem, w, h, ends)
    return [p.rotated(rotation) for p in GEOMETRY_BY_TYPE[module_type](sketch)]


# ----------------------7. Random Variation----------------------------


class VariationMode(Enum):
    BY_TYPE, FULL = 'byType', 'full'


@dataclass(frozen=True)
class RandomBounds:
    stem_min: float = 0.5
    stem_max: float = 1.0
    """stem multipliers (stem = module size * multiplier * 2)"""
    strokes_min: int = 1
    strokes_max: int = 8
    contrast_min: float = 0.5
    contrast_max: float = 1.0
    """stroke to gap ratio"""
    dash_length_min: float = 1.0
    dash_length_max: float = 1.5
    gap_length_min: float = 1.0
    gap_length_max: float = 1.5
    mode_type: VariationMode = VariationMode.BY_TYPE
    use_dash: bool = False
    rounded: bool = False
    close_ends: bool = True
    use_alternatives: bool = True

    @classmethod
    def from_dict(cls, bounds_def: dict):
        if 'mode_type' in bounds_def:
            bounds_def = {**bounds_def, 'mode_type': VariationMode(bounds_def['mode_type'])}
        return cls(**bounds_def)


@dataclass(frozen=True)
class Variation:
    stem: float
    stroke_count: int
    stroke_gap_ratio: float
    dash_length: float
    gap_length: float
    use_dash: bool = False

    @classmethod
    def draw(cls, rng: random.Random, bounds: RandomBounds, module_size: float):
        stem = module_size * rng.uniform(bounds.stem_min, bounds.stem_max) * 2
        strokes = rng.randint(bounds.strokes_min, max(bounds.strokes_min, bounds.strokes_max))
        ratio = rng.uniform(bounds.contrast_min, bounds.contrast_max)
        dash = rng.uniform(bounds.dash_length_min, bounds.dash_length_max)
        gap = rng.uniform(bounds.gap_length_min, bounds.gap_length_max)
        use_dash = bounds.use_dash and strokes > 1 and rng.random() < 0.5
        return cls(stem, strokes, ratio, dash, gap, use_dash)


@dataclass(frozen=True)
class TypeKey:
    module_type: ModuleType


@dataclass(frozen=True)
class PositionKey:
    line: int
    char: int
    col: int
    row: int


VariationKey = Union[TypeKey, PositionKey]


class VariationCache:
    """Per-module random draws, owned by the caller's session and shared by a preview and its export.
    An entry is drawn on first lookup and never overwritten until the bounds change or invalidate() runs.
    Also remembers which alternate each (line, char) position shows."""

    def __init__(self, seed=None):
        self.rng = random.Random(seed)
        self._variations: dict = {}
        self._alternates: dict[tuple[int, int], int] = {}
        self._epoch = None
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._variations)

    def __contains__(self, key: VariationKey):
        return key in self._variations

    def invalidate(self):
        with self._lock:
            self._variations.clear()
            self._epoch = None

    def variation_for(self, key: VariationKey, bounds: RandomBounds, module_size: float) -> Variation:
        with self._lock:
            epoch = (bounds, module_size)
            if epoch != self._epoch:
                self._variations.clear()
                self._epoch = epoch
            if (found := self._variations.get(key)) is None:
                found = self._variations[key] = Variation.draw(self.rng, bounds, module_size)
            return found

    def alternate_for(self, line: int, index: int) -> Optional[int]:
        return self._alternates.get((line, index))

    def choose_alternate(self, line: int, index: int, choices: int) -> int:
        """A random pick among `choices` (0 being the base glyph), kept for later renders"""
        with self._lock:
            if (found := self._alternates.get((line, index))) is None:
                found = self._alternates[(line, index)] = self.rng.randrange(choices)
            return found

    def select_alternate(self, line: int, index: int, alternate: int):
        with self._lock:
            self._alternates[(line, index)] = alternate

    def toggle_alternate(self, line: int, index: int, choices: int) -> int:
        """Steps the position to the next of `choices` variants, wrapping back to the base glyph."""
        with self._lock:
            alternate = ((self._alternates.get((line, index)) or 0) + 1) % max(choices, 1)
            self._alternates[(line, index)] = alternate
            return alternate

    def clear_alternates(self):
        with self._lock:
            self._alternates.clear()


# ----------------------8. Parameters----------------------------


class Mode(Enum):
    FILL, STRIPES, DASH, SD, RANDOM = 'fill', 'stripes', 'dash', 'sd', 'random'


MODE_STYLES = {
    Mode.FILL: StrokeStyle.SOLID,
    Mode.STRIPES: StrokeStyle.STRIPES,
    Mode.DASH: StrokeStyle.DASH,
    Mode.SD: StrokeStyle.STRIPES_DASH,
    Mode.RANDOM: StrokeStyle.STRIPES,
}


class TextAlign(Enum):
    LEFT, CENTER, RIGHT = 'left', 'center', 'right'


def snake_case(key: str) -> str:
    return re.sub(r'(?<=[a-z0-9])(?=[A-Z])', '_', key).lower()


@dataclass(frozen=True)
class Params:
    """Render Parameters: one immutable snapshot per render call"""
    module_size: float = 24
    stem: float = 24
    """stroke thickness basis, module_size * stem multiplier * 2"""
    mode: Mode = Mode.FILL
    strokes_num: int = 2
    stroke_gap_ratio: float = 1.0
    corner_radius: float = 0
    """reserved; carried through configuration, not used by module geometry"""
    rounded_caps: bool = False
    close_ends: bool = False
    dash_length: float = 0.10
    gap_length: float = 0.30
    dash_chess: bool = False
    letter_spacing: float = 24
    line_height: float = 48
    text_align: TextAlign = TextAlign.CENTER
    color: Color = Color.WHITE
    bg_color: Color = Color.BLACK
    grid_color: Color = Color.GRID_GREY
    show_grid: bool = True
    show_endpoints: bool = False
    show_test_circles: bool = False
    variation: RandomBounds = RandomBounds()

    def __post_init__(self):
        if self.module_size <= 0:
            raise ValueError(f'module_size must be positive, got {self.module_size}')
        if self.strokes_num < 1:
            raise ValueError(f'strokes_num must be at least 1, got {self.strokes_num}')
        if self.stroke_gap_ratio <= 0:
            raise ValueError(f'stroke_gap_ratio must be positive, got {self.stroke_gap_ratio}')

    @classmethod
    def make(cls, module_size: float = 24, stem_multiplier: float = 0.5,
             letter_spacing_multiplier: float = 1.0, line_height_multiplier: float = 2.0, **kwargs):
        return cls(module_size=module_size, stem=module_size * stem_multiplier * 2,
                   letter_spacing=module_size * letter_spacing_multiplier,
                   line_height=module_size * line_height_multiplier, **kwargs)

    BOUND_ALIASES = {'random_dash': 'use_dash', 'use_alternatives_in_random': 'use_alternatives'}
    MULTIPLIER_KEYS = ('stem_multiplier', 'letter_spacing_multiplier', 'line_height_multiplier')

    @classmethod
    def from_dict(cls, params_def: dict):
        """Accepts camelCase or snake_case keys; random bounds either flat (randomStemMin...)
        or as a nested 'variation' table."""
        kwargs, bounds = {}, {}
        for key, value in params_def.items():
            key = snake_case(key)
            if key == 'variation':
                bounds.update({snake_case(k): v for k, v in value.items()})
                continue
            key = cls.BOUND_ALIASES.get(key, key)
            if key.startswith('random_'):
                bounds[key[len('random_'):]] = value
            elif key in ('use_dash', 'use_alternatives'):
                bounds[key] = value
            else:
                kwargs[key] = value
        if 'mode' in kwargs:
            kwargs['mode'] = Mode(kwargs['mode'])
        if 'text_align' in kwargs:
            kwargs['text_align'] = TextAlign(kwargs['text_align'])
        for key in ('color', 'bg_color', 'grid_color'):
            if isinstance(kwargs.get(key), str):
                kwargs[key] = Color.from_str(kwargs[key])
            elif isinstance(kwargs.get(key), list):
                kwargs[key] = tuple(kwargs[key])
        if bounds:
            kwargs['variation'] = RandomBounds.from_dict(bounds)
        multipliers = {k: kwargs.pop(k) for k in cls.MULTIPLIER_KEYS if k in kwargs}
        base = cls.make(module_size=kwargs.pop('module_size', cls.module_size), **multipliers)
        return replace(base, **kwargs)

    @classmethod
    def from_toml_file(cls, toml_filename: str):
        return cls.from_dict(toml.load(toml_filename))

    example_dir_path = os.path.join(os.path.dirname(os.path.realpath(__file__)), 'examples')

    @classmethod
    def from_example(cls, example_name: str):
        return cls.from_toml_file(os.path.join(cls.example_dir_path, f'Preset-{example_name}.toml'))

    @classmethod
    def load(cls, preset_name):
        return cls.from_toml_file(preset_name) if os.path.exists(preset_name) else cls.from_example(preset_name)

    @classmethod
    def example_names(cls):
        for fn in sorted(os.listdir(cls.example_dir_path)):
            if match := re.match(r'Preset-(.*)\.toml$', fn):
                yield match.group(1)

    @property
    def is_random(self):
        return self.mode == Mode.RANDOM

    @property
    def uses_rounded_caps(self):
        return self.variation.rounded if self.is_random else self.rounded_caps

    @property
    def uses_close_ends(self):
        return self.variation.close_ends if self.is_random else self.close_ends

    @property
    def needs_analysis(self):
        return (self.uses_rounded_caps or self.uses_close_ends
                or self.show_endpoints or self.show_test_circles)

    def stroke_options(self) -> StrokeOptions:
        return StrokeOptions(MODE_STYLES[self.mode], self.strokes_num, self.stroke_gap_ratio,
                             self.dash_length, self.gap_length, self.dash_chess,
                             self.uses_rounded_caps, self.uses_close_ends)

    def variation_options(self, v: Variation) -> StrokeOptions:
        style = StrokeStyle.STRIPES_DASH if v.use_dash else StrokeStyle.STRIPES
        return StrokeOptions(style, v.stroke_count, v.stroke_gap_ratio, v.dash_length, v.gap_length,
                             self.dash_chess, self.variation.rounded, self.variation.close_ends)


# ----------------------9. Text Layout----------------------------


@dataclass(frozen=True)
class PlacedChar:
    line: int
    index: int
    char: str
    cols: int
    x: float
    y: float
    """top-left corner of the glyph grid"""


class TextLayout:
    """Fixed per-character widths: 5 modules for a glyph, 3 for a space,
    2 for a space following a space (which also takes no letter spacing)."""

    def __init__(self, text: str, params: Params):
        self.lines = [line.strip() for line in text.split('\n')]
        self.params = params

    @staticmethod
    def is_repeated_space(line: str, i: int):
        return line[i] == ' ' and i > 0 and line[i - 1] == ' '

    def char_cols(self, line: str, i: int) -> int:
        if line[i] != ' ':
            return GLYPH_COLS
        return REPEATED_SPACE_COLS if self.is_repeated_space(line, i) else SPACE_COLS

    def advance(self, line: str, i: int) -> float:
        spacing = 0 if self.is_repeated_space(line, i) else self.params.letter_spacing
        return self.char_cols(line, i) * self.params.module_size + spacing

    def line_width(self, line: str) -> float:
        result = sum(self.advance(line, i) for i in range(len(line)))
        if line and not self.is_repeated_space(line, len(line) - 1):
            result -= self.params.letter_spacing
        return result

    @property
    def letter_h(self):
        return ROWS * self.params.module_size

    @property
    def content_size(self) -> XY:
        w = max((self.line_width(line) for line in self.lines), default=0)
        h = len(self.lines) * (self.letter_h + self.params.line_height) - self.params.line_height
        return w, h

    def document_size(self) -> int:
        """Side of the square export document: content plus a module of margin, in whole pixels"""
        return math.ceil(max(self.content_size) + 2 * self.params.module_size)

    def origin_in(self, w: float, h: float) -> XY:
        content_w, content_h = self.content_size
        return (w - content_w) / 2, (h - content_h) / 2

    def placements(self, x0: float, y0: float) -> Iterator[PlacedChar]:
        p = self.params
        content_w = self.content_size[0]
        for li, line in enumerate(self.lines):
            line_w = self.line_width(line)
            if p.text_align == TextAlign.LEFT:
                x = x0
            elif p.text_align == TextAlign.RIGHT:
                x = x0 + content_w - line_w
            else:
                x = x0 + (content_w - line_w) / 2
            y = y0 + li * (self.letter_h + p.line_height)
            for i, char in enumerate(line):
                yield PlacedChar(li, i, char, self.char_cols(line, i), x, y)
                x += self.advance(line, i)


# ----------------------10. Outputs----------------------------


GRID_LINE_W = 0.5
MARKER_R = 6
MARKER_W = 2
TEST_CIRCLE_W = 1
ARC_STEP_PX = 2  # raster arc tessellation


class Out:
    def __init__(self, r):
        self.r = r
    def fill_background(self, w, h, col): pass
    def draw_line(self, x0, y0, x1, y1, col, width=1): pass
    def draw_stroke(self, prim: Primitive, col): pass
    def draw_dot(self, xc, yc, r, fill, outline, width=1): pass
    def draw_circle(self, xc, yc, r, col, width=1): pass
    def begin_group(self, group_id: str, **attrs): pass
    def end_group(self): pass


class RasterOut(Out):
    """Pillow has no dashes, caps, or joins, so strokes are split into their dash pieces here
    and filled as polygons."""
    r: ImageDraw.ImageDraw = None

    def __init__(self, r, scale: float = 1):
        super().__init__(r)
        self.scale = scale

    @classmethod
    def for_image(cls, i: Image.Image, scale: float = 1):
        return cls(ImageDraw.Draw(i), scale)

    def px(self, v: float) -> int:
        return max(1, round(v * self.scale))

    def fill_background(self, w, h, col):
        k = self.scale
        self.r.rectangle((0, 0, w * k, h * k), fill=Color.to_pil(col))

    def draw_line(self, x0, y0, x1, y1, col, width=1):
        k = self.scale
        self.r.line((x0 * k, y0 * k, x1 * k, y1 * k), fill=Color.to_pil(col), width=self.px(width))

    def draw_stroke(self, prim: Primitive, col):
        fill = Color.to_pil(col)
        for piece in prim.dash_pieces():
            piece = piece.scaled(self.scale)
            if isinstance(piece, Arc):
                self.fill_arc(piece, fill)
            else:
                self.fill_polyline(piece, fill)

    def draw_dot(self, xc, yc, r, fill, outline, width=1):
        k = self.scale
        self.r.circle((xc * k, yc * k), r * k, fill=Color.to_pil(fill), outline=Color.to_pil(outline),
                      width=self.px(width))

    def draw_circle(self, xc, yc, r, col, width=1):
        k = self.scale
        self.r.circle((xc * k, yc * k), r * k, outline=Color.to_pil(col), width=self.px(width))

    def fill_quad(self, p: XY, direction: XY, length: float, hw: float, fill):
        """Rectangle from p along a unit direction, 2*hw wide"""
        (x, y), (ux, uy) = p, direction
        nx, ny = -uy * hw, ux * hw
        ex, ey = x + ux * length, y + uy * length
        self.r.polygon([(x + nx, y + ny), (ex + nx, ey + ny), (ex - nx, ey - ny), (x - nx, y - ny)], fill=fill)

    def fill_cap(self, p: XY, direction: XY, hw: float, cap: LineCap, fill):
        if cap == LineCap.ROUND:
            self.r.circle(p, hw, fill=fill)
        elif cap == LineCap.SQUARE:
            self.fill_quad(p, direction, hw, hw, fill)

    def fill_polyline(self, line: Polyline, fill):
        hw = line.width / 2
        pts = [p for i, p in enumerate(line.points) if i == 0 or p != line.points[i - 1]]
        if len(pts) < 2:
            if line.cap == LineCap.ROUND:
                self.r.circle(pts[0], hw, fill=fill)
            elif line.cap == LineCap.SQUARE:
                x, y = pts[0]
                self.r.rectangle((x - hw, y - hw, x + hw, y + hw), fill=fill)
            return
        dirs = []
        for a, b in zip(pts, pts[1:]):
            d = math.dist(a, b)
            u = ((b[0] - a[0]) / d, (b[1] - a[1]) / d)
            dirs.append(u)
            self.fill_quad(a, u, d, hw, fill)
        for i, p in enumerate(pts[1:-1]):
            if line.join == LineJoin.ROUND:
                self.r.circle(p, hw, fill=fill)
            else:
                self.fill_quad(p, dirs[i], hw, hw, fill)
                self.fill_quad(p, (-dirs[i + 1][0], -dirs[i + 1][1]), hw, hw, fill)
        self.fill_cap(pts[0], (-dirs[0][0], -dirs[0][1]), hw, line.cap, fill)
        self.fill_cap(pts[-1], dirs[-1], hw, line.cap, fill)

    def fill_arc(self, arc: Arc, fill):
        hw = arc.width / 2
        outer, inner = arc.r + hw, max(arc.r - hw, 0.0)
        if arc.sweep > 0:
            steps = max(2, math.ceil(arc.sweep * outer / ARC_STEP_PX))
            angles = [arc.start + arc.sweep * i / steps for i in range(steps + 1)]
            ring = [(arc.cx + outer * math.cos(a), arc.cy + outer * math.sin(a)) for a in angles]
            ring += [(arc.cx + inner * math.cos(a), arc.cy + inner * math.sin(a)) for a in reversed(angles)]
            self.r.polygon(ring, fill=fill)
        a0, a1 = arc.start, arc.end
        self.fill_cap(arc.start_point, (math.sin(a0), -math.cos(a0)), hw, arc.cap, fill)
        self.fill_cap(arc.end_point, (-math.sin(a1), math.cos(a1)), hw, arc.cap, fill)


class SVGOut(Out):
    r: svg.Drawing = None

    def __init__(self, r):
        super().__init__(r)
        self.groups = []

    @classmethod
    def for_drawing(cls, i: svg.Drawing):
        return cls(i)

    @staticmethod
    def color_str(col):
        return Color.to_str(col)

    def append(self, elem):
        (self.groups[-1] if self.groups else self.r).append(elem)

    def begin_group(self, group_id: str, **attrs):
        group = svg.Group(id=group_id, **attrs)
        self.append(group)
        self.groups.append(group)

    def end_group(self):
        self.groups.pop()

    def fill_background(self, w, h, col):
        self.append(svg.Rectangle(0, 0, w, h, fill=self.color_str(col)))

    def draw_line(self, x0, y0, x1, y1, col, width=1):
        self.append(svg.Line(x0, y0, x1, y1, stroke=self.color_str(col), stroke_width=width))

    def draw_stroke(self, prim: Primitive, col):
        # stroke color is set once on the enclosing glyph group
        attrs = {'stroke_width': prim.width, 'stroke_linecap': prim.cap.value}
        if prim.dash:
            attrs['stroke_dasharray'] = ' '.join(map(str, prim.dash.array))
            attrs['stroke_dashoffset'] = prim.dash.offset
        if isinstance(prim, Arc) and prim.sweep <= 0:
            # SVG drops an arc between identical points; a zero-length line keeps its caps
            x0, y0 = prim.start_point
            elem = svg.Line(x0, y0, x0, y0, **attrs)
        elif isinstance(prim, Arc):
            (x0, y0), (x1, y1) = prim.start_point, prim.end_point
            large_arc = 1 if prim.sweep > PI else 0
            elem = svg.Path(**attrs).M(x0, y0).A(prim.r, prim.r, 0, large_arc, 1, x1, y1)
        elif len(prim.points) == 2:
            (x0, y0), (x1, y1) = prim.points
            elem = svg.Line(x0, y0, x1, y1, **attrs)
        else:
            attrs['stroke_linejoin'] = prim.join.value
            elem = svg.Path(**attrs).M(*prim.points[0])
            for x, y in prim.points[1:]:
                elem.L(x, y)
        self.append(elem)

    def draw_dot(self, xc, yc, r, fill, outline, width=1):
        self.append(svg.Circle(xc, yc, r, fill=self.color_str(fill), stroke=self.color_str(outline),
                               stroke_width=width))

    def draw_circle(self, xc, yc, r, col, width=1):
        self.append(svg.Circle(xc, yc, r, fill='none', stroke=self.color_str(col), stroke_width=width))


# ----------------------11. Rendering----------------------------


@dataclass(frozen=True)
class Renderer:
    r: Out = None
    params: Params = Params()
    cache: VariationCache = field(default_factory=VariationCache)
    alphabet: Alphabet = field(default_factory=Alphabet)

    @classmethod
    def to_image(cls, i, params: Params, cache: VariationCache = None, alphabet: Alphabet = None, scale=1):
        out = None
        if isinstance(i, Image.Image):
            out = RasterOut.for_image(i, scale)
        elif isinstance(i, svg.Drawing):
            out = SVGOut.for_drawing(i)
        return cls(out, params, cache if cache is not None else VariationCache(), alphabet or Alphabet())

    def alternate_index(self, pc: PlacedChar) -> Optional[int]:
        chosen = self.cache.alternate_for(pc.line, pc.index)
        if chosen is None and self.params.is_random and self.params.variation.use_alternatives:
            if count := self.alphabet.alternate_count(pc.char):
                chosen = self.cache.choose_alternate(pc.line, pc.index, count + 1)
        return chosen

    def glyph_grid(self, pc: PlacedChar) -> Grid:
        """Parsed glyph for a placed character; an unknown or broken glyph comes back blank."""
        if pc.cols == REPEATED_SPACE_COLS:
            return Grid.empty(pc.cols)
        try:
            return parse_glyph(self.alphabet.code_for(pc.char, self.alternate_index(pc)), pc.cols)
        except MissingGlyph:
            if DEBUG:
                print(f'No glyph for {pc.char!r}; leaving it blank')
        except MalformedGlyphCode as e:
            if DEBUG:
                print(f'Bad glyph code for {pc.char!r}: {e}')
        return Grid.empty(pc.cols)

    def variation_key(self, pc: PlacedChar, col: int, row: int, module: Module) -> VariationKey:
        if self.params.variation.mode_type == VariationMode.FULL:
            return PositionKey(pc.line, pc.index, col, row)
        return TypeKey(module.type)

    def module_options(self, key: VariationKey, has_endpoints: bool) -> tuple[StrokeOptions, float]:
        p = self.params
        if p.is_random:
            v = self.cache.variation_for(key, p.variation, p.module_size)
            opts, stem = p.variation_options(v), v.stem
        else:
            opts, stem = p.stroke_options(), p.stem
        # solid and striped strokes only round off where they actually end
        if opts.rounded_caps and not (opts.style.is_dashed or has_endpoints):
            opts = replace(opts, rounded_caps=False)
        return opts, stem

    def glyph_strokes(self, pc: PlacedChar, grid: Grid = None, analysis: GlyphAnalysis = None) -> list[Primitive]:
        p = self.params
        m = p.module_size
        if grid is None:
            grid = self.glyph_grid(pc)
        if analysis is None:
            analysis = analyze_glyph(grid) if p.needs_analysis else NO_ANALYSIS
        result = []
        for col, row, module in grid:
            if module.is_empty:
                continue
            ends = analysis.endpoint_sides(col, row)
            opts, stem = self.module_options(self.variation_key(pc, col, row, module), bool(ends))
            cx, cy = pc.x + (col + 0.5) * m, pc.y + (row + 0.5) * m
            for prim in module_geometry(module.type, module.rotation, opts, stem, m, m, ends):
                result.append(prim.translated(cx, cy))
        return result

    def draw_grid(self, x0: float, y0: float, w: float, h: float):
        m, col = self.params.module_size, self.params.grid_color
        x_start, y_start = x0 % m, y0 % m
        for k in range(int((w - x_start) // m) + 1):
            x = x_start + k * m
            self.r.draw_line(x, 0, x, h, col, GRID_LINE_W)
        for k in range(int((h - y_start) // m) + 1):
            y = y_start + k * m
            self.r.draw_line(0, y, w, y, col, GRID_LINE_W)

    def draw_points(self, pc: PlacedChar, analysis: GlyphAnalysis):
        p = self.params
        for c in analysis.connections:
            x, y = side_midpoint(c.col1, c.row1, c.side1, p.module_size)
            self.r.draw_dot(pc.x + x, pc.y + y, MARKER_R, Color.CONNECTION_BLUE, p.color, MARKER_W)
        for e in analysis.endpoints:
            x, y = side_midpoint(e.col, e.row, e.side, p.module_size)
            self.r.draw_dot(pc.x + x, pc.y + y, MARKER_R, Color.ENDPOINT_RED, p.color, MARKER_W)

    def draw_test_circles(self, pc: PlacedChar, grid: Grid, analysis: GlyphAnalysis):
        p = self.params
        m = p.module_size
        for e in analysis.endpoints:
            x, y = stroke_end_point(grid.at(e.col, e.row), e.side, m, p.stem)
            self.r.draw_circle(pc.x + (e.col + 0.5) * m + x, pc.y + (e.row + 0.5) * m + y,
                               p.stem / 4, p.color, TEST_CIRCLE_W)

    def render(self, text: str, w: float, h: float):
        """Background, grid, glyph strokes, then the diagnostic overlays, each in its own group."""
        p, r = self.params, self.r
        layout = TextLayout(text, p)
        x0, y0 = layout.origin_in(w, h)
        r.begin_group('back')
        r.fill_background(w, h, p.bg_color)
        r.end_group()
        if p.show_grid:
            r.begin_group('grid')
            self.draw_grid(x0, y0, w, h)
            r.end_group()
        drawn = []
        r.begin_group('typo', stroke=Color.to_str(p.color), fill='none')
        for pc in layout.placements(x0, y0):
            grid = self.glyph_grid(pc)
            analysis = analyze_glyph(grid) if p.needs_analysis else NO_ANALYSIS
            for prim in self.glyph_strokes(pc, grid, analysis):
                r.draw_stroke(prim, p.color)
            drawn.append((pc, grid, analysis))
        r.end_group()
        if p.show_endpoints:
            r.begin_group('points')
            for pc, _, analysis in drawn:
                self.draw_points(pc, analysis)
            r.end_group()
        if p.show_test_circles:
            r.begin_group('test-circles')
            for pc, grid, analysis in drawn:
                self.draw_test_circles(pc, grid, analysis)
            r.end_group()


def image_for_rendering(params: Params, text: str, out_format: OutFormat, w=None, h=None, scale=1):
    size = TextLayout(text, params).document_size()
    w, h = w or size, h or size
    if out_format == OutFormat.PNG:
        return Image.new('RGB', (math.ceil(w * scale), math.ceil(h * scale)), Color.to_pil(params.bg_color))
    elif out_format == OutFormat.SVG:
        return svg.Drawing(w, h, id_prefix='def_')


def render_text(params: Params, text: str, out_format: OutFormat, cache: VariationCache = None,
                alphabet: Alphabet = None, img=None, scale=1):
    """Renders text onto a new (or the given) image; pass the same cache to a preview and its export."""
    if img is None:
        img = image_for_rendering(params, text, out_format, scale=scale)
    r = Renderer.to_image(img, params, cache, alphabet, scale)
    if isinstance(img, Image.Image):
        w, h = img.width / scale, img.height / scale
    else:
        w, h = img.width, img.height
    r.render(text, w, h)
    return img


def save_image(img_to_save, basename: str, output_suffix=None):
    output_filename = f"{basename}{'.' + output_suffix if output_suffix else ''}"
    output_full_path = os.path.abspath(output_filename)
    if isinstance(img_to_save, Image.Image):
        output_full_path += '.png'
        img_to_save.save(output_full_path, 'PNG')
    elif isinstance(img_to_save, svg.Drawing):
        output_full_path += '.svg'
        img_to_save.save_svg(output_full_path)
    print(f'Result saved to: file://{output_full_path}')


# ----------------------12. Commands------------------------------------------


DEFAULT_TEXT = 'Void\nTypeface\nCode'


def main():
    """CLI processor for rendering text with a preset."""
    import argparse
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--text',
                             default=DEFAULT_TEXT,
                             help='Text to render; \\n separates lines')
    args_parser.add_argument('--preset',
                             choices=list(Params.example_names()),
                             help='Which example preset (defaults when omitted)')
    args_parser.add_argument('--params',
                             help='Path to a TOML file of render parameters')
    args_parser.add_argument('--format',
                             choices=[f.value for f in OutFormat],
                             help='Output format (both when omitted, sharing one random cache)')
    args_parser.add_argument('--mode',
                             choices=[m.value for m in Mode],
                             help='Override the stroke mode')
    args_parser.add_argument('--seed',
                             type=int,
                             help='Seed for random mode')
    args_parser.add_argument('--scale',
                             type=float,
                             default=1,
                             help='Pixel scale of the PNG output')
    args_parser.add_argument('--suffix',
                             help='Output filename suffix for variations')
    args_parser.add_argument('--test',
                             action='store_true',
                             help='Output filename for test comparisons')
    args_parser.add_argument('--no-grid',
                             action='store_true',
                             help='Leave out the background module grid')
    args_parser.add_argument('--debug',
                             action='store_true',
                             help='Render endpoint, connection and test circle overlays')
    cli_args = args_parser.parse_args()
    params = Params()
    if cli_args.params:
        params = Params.from_toml_file(cli_args.params)
    elif cli_args.preset:
        params = Params.from_example(cli_args.preset)
    if cli_args.mode:
        params = replace(params, mode=Mode(cli_args.mode))
    if cli_args.no_grid:
        params = replace(params, show_grid=False)
    global DEBUG
    DEBUG = cli_args.debug
    if DEBUG:
        params = replace(params, show_endpoints=True, show_test_circles=True)
    text = cli_args.text.replace('\\n', '\n')
    out_formats = [OutFormat(cli_args.format)] if cli_args.format else list(OutFormat)
    output_suffix = cli_args.suffix or ('test' if cli_args.test else None)
    basename = f'{cli_args.preset or "Void"}.Text'
    cache = VariationCache(cli_args.seed)

    start_time = time.process_time()
    for out_format in out_formats:
        img = render_text(params, text, out_format, cache=cache, scale=cli_args.scale)
        print(f'{out_format.name} render finished at: {round(time.process_time() - start_time, 3)} seconds')
        save_image(img, basename, output_suffix)
    print(f'Program finished at: {round(time.process_time() - start_time, 3)} seconds')


if __name__ == '__main__':
    main()
