"""LaTeX/Markdown to HTML formatting for lesson text, with an incremental mode
for token-by-token streams.

Math is never rendered here. Math spans are left as escaped LaTeX source inside
their delimiters for MathJax to typeset on the client. Math and code are parked
behind placeholders before markdown-it renders the rest.
"""
import html
import logging
import re
import textwrap
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from markdown_it import MarkdownIt

from latex import TEXT_BRACED_MACROS, TEXT_SYMBOL_MACROS, collapse_macro_escapes, normalize_delimiters

logger = logging.getLogger("lernex.formatter")

# Private-use character; stripped from input so placeholder keys never collide with source text
PLACEHOLDER_MARK = "\ue000"
FLUSH_THRESHOLD = 160
LOOKAHEAD = 2

CLOSERS = {"\\(": "\\)", "\\[": "\\]", "$$": "$$", "$": "$"}


@dataclass
class Segment:
    is_math: bool
    text: str


@dataclass
class MathBoundaryState:
    inline_depth: int = 0
    display_depth: int = 0
    single_dollar_open: bool = False
    double_dollar_open: bool = False
    opened: List[str] = field(default_factory=list)

    @property
    def in_dollar_math(self) -> bool:
        return self.single_dollar_open or self.double_dollar_open

    @property
    def in_math(self) -> bool:
        return bool(self.inline_depth or self.display_depth or self.in_dollar_math)

    def open(self, token: str) -> None:
        if token == "\\(":
            self.inline_depth += 1
        elif token == "\\[":
            self.display_depth += 1
        elif token == "$$":
            self.double_dollar_open = True
        else:
            self.single_dollar_open = True
        self.opened.append(token)

    def close(self, token: str) -> None:
        if token == "\\(":
            self.inline_depth = max(0, self.inline_depth - 1)
        elif token == "\\[":
            self.display_depth = max(0, self.display_depth - 1)
        elif token == "$$":
            self.double_dollar_open = False
        else:
            self.single_dollar_open = False
        for idx in range(len(self.opened) - 1, -1, -1):
            if self.opened[idx] == token:
                del self.opened[idx]
                break

    def closers(self) -> str:
        """Closing delimiters for every open region, innermost first."""
        return "".join(CLOSERS[token] for token in reversed(self.opened))


class MathScanner:
    """Left-to-right delimiter scanner that can be fed text incrementally.

    Characters whose meaning depends on what follows (a backslash, a dollar
    sign, a backtick run) are held back until enough text arrives or finish()
    is called, so the result never depends on how the text was chunked.

    With markdown=True the scanner also follows code fences, code spans, open
    ** spans and pipe-table rows. Code is not scanned for math, and none of
    these regions get flush points.
    """

    def __init__(self, flush_threshold: int = FLUSH_THRESHOLD, markdown: bool = True):
        self.flush_threshold = flush_threshold
        self.markdown = markdown
        self.reset()

    def reset(self) -> None:
        self.state = MathBoundaryState()
        self.text = ""
        self.segments: List[Segment] = []
        self.flush_points: List[int] = []
        self._pos = 0
        self._segment_start = 0
        self._last_flush = 0
        self._line_first = ""
        self._in_fence = False
        self._fence_line = False
        self._code_run = 0
        self._in_bold = False

    def feed(self, chunk: str) -> None:
        if chunk:
            self.text += chunk
            self._advance(final=False)

    def finish(self) -> None:
        self._advance(final=True)
        if self._segment_start < len(self.text):
            self.segments.append(Segment(self.state.in_math, self.text[self._segment_start:]))
            self._segment_start = len(self.text)

    def _holds_flush(self) -> bool:
        if not self.markdown:
            return False
        return bool(self._in_fence or self._code_run or self._in_bold or self._line_first == "|")

    def _end_line(self) -> None:
        self._line_first = ""
        self._fence_line = False
        self._code_run = 0
        self._in_bold = False

    def _cut(self, end: int, is_math: bool) -> None:
        if end > self._segment_start:
            self.segments.append(Segment(is_math, self.text[self._segment_start:end]))
            self._segment_start = end

    def _mark_flush(self, pos: int) -> None:
        if pos > self._last_flush:
            self.flush_points.append(pos)
            self._last_flush = pos

    def _open(self, pos: int, token: str) -> None:
        if not self.state.in_math:
            self._cut(pos, is_math=False)
        self.state.open(token)

    def _close(self, end: int, token: str) -> None:
        self.state.close(token)
        if not self.state.in_math:
            self._cut(end, is_math=True)
            if not self._holds_flush():
                self._mark_flush(end)

    def _advance(self, final: bool) -> None:
        text = self.text
        n = len(text)
        limit = n if final else n - LOOKAHEAD
        st = self.state
        i = self._pos
        while i < limit:
            ch = text[i]
            nxt = text[i + 1] if i + 1 < n else ""
            line_fresh = not self._line_first
            if line_fresh and not ch.isspace():
                self._line_first = ch

            if self.markdown:
                fence_start = line_fresh and not st.in_math and text.startswith("```", i)
                if self._in_fence or self._fence_line or fence_start:
                    if ch == "\n":
                        self._end_line()
                        i += 1
                    elif fence_start:
                        # the rest of a fence line is its info string
                        self._in_fence = not self._in_fence
                        self._fence_line = True
                        i += 3
                    else:
                        i += 1
                    continue

                if ch == "`" and not st.in_math:
                    j = i
                    while j < n and text[j] == "`":
                        j += 1
                    if j == n and not final:
                        if line_fresh:
                            self._line_first = ""
                        break
                    run = j - i
                    if not self._code_run:
                        self._code_run = run
                    elif run == self._code_run:
                        self._code_run = 0
                    i = j
                    continue

                if self._code_run:
                    if ch == "\n":
                        self._end_line()
                    i += 1
                    continue

                if ch == "*" and nxt == "*" and not st.in_math:
                    self._in_bold = not self._in_bold
                    i += 2
                    continue

            if ch == "\\":
                width = 2
                if nxt == "\\" and i + 2 < n and text[i + 2] in "()[]":
                    # doubled delimiter escape, \\( is read as \(
                    nxt = text[i + 2]
                    width = 3
                if nxt and nxt in "([" and not st.in_dollar_math:
                    self._open(i, "\\" + nxt)
                    i += width
                    continue
                if nxt and nxt in ")]" and not st.in_dollar_math:
                    token = "\\(" if nxt == ")" else "\\["
                    if token in st.opened:
                        self._close(i + width, token)
                    i += width
                    continue
                # any other escaped pair (\$, \\, the start of a macro) is skipped as a unit
                i += 2 if nxt and nxt != "\n" else 1
                continue

            if ch == "$":
                if st.in_math and not st.in_dollar_math:
                    i += 1
                    continue
                if nxt == "$":
                    after = text[i + 2] if i + 2 < n else ""
                    if st.double_dollar_open:
                        self._close(i + 2, "$$")
                        i += 2
                    elif st.single_dollar_open:
                        # "$a$$b$": the first dollar closes, the second may open
                        self._close(i + 1, "$")
                        i += 1
                    elif not after or after.isdigit():
                        # two currency mentions, not display math
                        i += 2
                    else:
                        self._open(i, "$$")
                        i += 2
                    continue
                if st.single_dollar_open:
                    self._close(i + 1, "$")
                elif not st.double_dollar_open and nxt and not nxt.isdigit() and not nxt.isspace():
                    self._open(i, "$")
                i += 1
                continue

            i += 1
            if ch.isspace() and not st.in_math and not self._holds_flush():
                prev = text[i - 2] if i >= 2 else ""
                if prev in (".", "!", "?"):
                    self._mark_flush(i)
                elif i - self._last_flush > self.flush_threshold:
                    self._mark_flush(i)
            if ch == "\n":
                self._end_line()
        self._pos = i


def split_math_segments(text: str) -> List[Segment]:
    scanner = MathScanner(markdown=False)
    scanner.feed(text)
    scanner.finish()
    return scanner.segments


def scan_math_state(text: str) -> MathBoundaryState:
    scanner = MathScanner(markdown=False)
    scanner.feed(text)
    scanner.finish()
    return scanner.state


def close_open_delimiters(text: str) -> str:
    """Append the closers for any math region left open at the end of text."""
    return text + scan_math_state(text).closers()


def escape_html(text: str) -> str:
    return html.escape(text, quote=True)


class PlaceholderMap:
    """Pre-rendered HTML parked behind opaque keys while Markdown is rendered."""

    _KEY_RE = re.compile(PLACEHOLDER_MARK + r"(\d+)" + PLACEHOLDER_MARK)

    def __init__(self):
        self._values: List[str] = []
        self._blocks = set()

    def add(self, rendered: str, block: bool = False) -> str:
        key = f"{PLACEHOLDER_MARK}{len(self._values)}{PLACEHOLDER_MARK}"
        self._values.append(rendered)
        if block:
            self._blocks.add(key)
        return key

    def is_block(self, key: str) -> bool:
        return key in self._blocks

    def restore(self, rendered: str) -> str:
        # table cells can hold placeholders of their own
        for _ in range(4):
            if PLACEHOLDER_MARK not in rendered:
                break
            rendered = self._KEY_RE.sub(lambda m: self._values[int(m.group(1))], rendered)
        return rendered


# === Markdown ===
def _table_class(state):
    for token in state.tokens:
        if token.type == "table_open":
            token.attrSet("class", "md-table")


_md = (
    MarkdownIt("commonmark", {"html": False, "breaks": True, "xhtmlOut": False})
    .enable("table")
    .enable("strikethrough")
)
_md.core.ruler.push("table_class", _table_class)

_RE_INLINE_CODE = re.compile(r"(?<!`)(`+)(?!`)(.+?)(?<!`)\1(?!`)")
_RE_ESCAPED_DOLLAR = re.compile(r"\\\$")
_RE_TABULAR = re.compile(
    r"(?:(?:\\\[|\$\$)\s*)?\\begin\{tabular\}(?:\{(?:[^{}]|\{[^{}]*\})*\})?(.*?)\\end\{tabular\}(?:\s*(?:\\\]|\$\$))?",
    re.S,
)
_RE_TABULAR_RULES = re.compile(r"\\(?:hline|toprule|midrule|bottomrule)|\\cline\{[^}]*\}")
_RE_TABULAR_ROW = re.compile(r"\\\\")
_RE_TABULAR_CELL = re.compile(r"(?<!\\)&")

_SCRIPTS = r"(?:[_^](?:\{[^{}\n]{1,40}\}|[A-Za-z0-9]{1,3}))"
_BRACED_ARG = r"\{(?:[^{}\n]|\{[^{}\n]*\})*\}"
_RE_BARE_MATH = re.compile(
    r"(?P<braced>\\(?:%s)(?:\[[^\]\n]*\])?(?:%s)+%s*)"
    r"|(?P<symbol>\\(?:%s)(?![A-Za-z])%s*)"
    r"|(?P<script>(?<![\w\\])(?:[A-Za-z]|\d+(?:\.\d+)?)%s+(?!\w))"
    % (
        "|".join(sorted(TEXT_BRACED_MACROS, key=len, reverse=True)), _BRACED_ARG, _SCRIPTS,
        "|".join(sorted(TEXT_SYMBOL_MACROS, key=len, reverse=True)), _SCRIPTS,
        _SCRIPTS,
    )
)

# Fragment mode only: headings and bullets become <hN> and bullet-prefixed lines
_RE_HEADER = re.compile(r"^(#{1,6})\s+(.*?)\s*#*$")
_RE_BULLET = re.compile(r"^\s*[-*+]\s+(.*)$")
_RE_BLOCK_KEY = re.compile(r"^" + PLACEHOLDER_MARK + r"\d+" + PLACEHOLDER_MARK + r"$")
_RE_BLOCK_PARAGRAPH = re.compile(r"<p>(" + PLACEHOLDER_MARK + r"\d+" + PLACEHOLDER_MARK + r")</p>")


def _park_blocks(text: str, store: PlaceholderMap, token_type: str, spacer=()) -> str:
    """Render each block of token_type on its own and leave a block key in its lines.

    The key keeps the indentation of the block's first line so a block nested
    in a list item stays inside it.
    """
    lines = text.split("\n")
    spans = [token.map for token in _md.parse(text) if token.type == token_type and token.map]
    for start, end in reversed(spans):
        first = lines[start]
        indent = first[:len(first) - len(first.lstrip())]
        source = textwrap.dedent("\n".join(lines[start:end]))
        key = store.add(_md.render(source).rstrip("\n"), block=True)
        lines[start:end] = [*spacer, indent + key, *spacer]
    return "\n".join(lines)


def _render_table(header: List[str], rows: List[List[str]], store: PlaceholderMap) -> str:
    width = len(header) if header else max((len(r) for r in rows), default=0)

    def pad(row):
        return (row + [""] * width)[:width]

    parts = ['<table class="latex-table">']
    if header:
        parts.append("<thead><tr>" + "".join(f"<th>{_format_inline(c, store)}</th>" for c in pad(header))
                     + "</tr></thead>")
    parts.append("<tbody>")
    for row in rows:
        parts.append("<tr>" + "".join(f"<td>{_format_inline(c, store)}</td>" for c in pad(row)) + "</tr>")
    parts.append("</tbody></table>")
    return "".join(parts)


def _extract_tabular(text: str, store: PlaceholderMap, spacer: str) -> str:
    def tabular(m):
        rows = []
        for raw_row in _RE_TABULAR_ROW.split(m.group(1)):
            row = _RE_TABULAR_RULES.sub("", raw_row).strip()
            if row:
                rows.append([c.strip() for c in _RE_TABULAR_CELL.split(row)])
        if not rows:
            return ""
        header, body = (rows[0], rows[1:]) if len(rows) > 1 else ([], rows)
        return spacer + store.add(_render_table(header, body, store), block=True) + spacer

    return _RE_TABULAR.sub(tabular, text)


def _promote_bare_math(prose: str, store: PlaceholderMap) -> str:
    """Wrap macros and x_2 / x^2 shorthand that appear outside delimiters in \\( \\)."""
    return _RE_BARE_MATH.sub(lambda m: store.add("\\(" + escape_html(m.group(0)) + "\\)"), prose)


def _protect_math(text: str, store: PlaceholderMap) -> str:
    text = close_open_delimiters(text)
    parts = []
    for segment in split_math_segments(text):
        if segment.is_math:
            parts.append(store.add(escape_html(segment.text)))
        else:
            # \$ must reach MathJax intact, markdown would eat the backslash
            prose = _RE_ESCAPED_DOLLAR.sub(lambda m: store.add(m.group(0)), segment.text)
            parts.append(_promote_bare_math(prose, store))
    return "".join(parts)


def _format_inline(text: str, store: PlaceholderMap) -> str:
    return _md.renderInline(_protect_math(text, store))


def _render_lines(text: str, store: PlaceholderMap, line_start: bool = True) -> str:
    out = []
    previous_block = False
    for idx, line in enumerate(text.split("\n")):
        stripped = line.strip()
        at_line_start = idx > 0 or line_start
        header = _RE_HEADER.match(stripped) if at_line_start else None
        bullet = _RE_BULLET.match(line) if at_line_start else None
        is_block = bool(header) or bool(_RE_BLOCK_KEY.match(stripped) and store.is_block(stripped))
        if idx > 0 and not previous_block and not is_block:
            out.append("<br>")
        if header:
            level = len(header.group(1))
            out.append(f"<h{level}>{_md.renderInline(header.group(2))}</h{level}>")
        elif is_block:
            out.append(stripped)
        elif bullet:
            out.append("&bull; " + _md.renderInline(bullet.group(1)))
        else:
            out.append(_md.renderInline(line))
        previous_block = is_block
    return "".join(out)


def format_text(text: str, block: bool = True, line_start: bool = True) -> str:
    """Convert Markdown + LaTeX text into HTML ready for MathJax.

    block=False renders a streaming fragment: no paragraph or list wrappers,
    newlines become <br>. line_start=False means the fragment continues a line
    that started earlier, so its first line is never read as a heading or
    list item.
    """
    if not text:
        return ""
    store = PlaceholderMap()
    text = text.replace(PLACEHOLDER_MARK, "").replace("\r\n", "\n")
    text = _park_blocks(text, store, "fence", ("",) if block else ())
    text = _RE_INLINE_CODE.sub(lambda m: store.add(_md.renderInline(m.group(0))), text)
    text = collapse_macro_escapes(normalize_delimiters(text))
    text = _extract_tabular(text, store, "\n\n" if block else "\n")
    text = _protect_math(text, store)
    if block:
        rendered = _RE_BLOCK_PARAGRAPH.sub(
            lambda m: m.group(1) if store.is_block(m.group(1)) else m.group(0), _md.render(text))
        rendered = rendered.rstrip("\n")
    else:
        rendered = _render_lines(_park_blocks(text, store, "table_open"), store, line_start)
    return store.restore(rendered)


class TypesetScheduler:
    """Debounced, cancelable typesetting after DOM mutations.

    A schedule waits `delay` seconds, then hops `frame_hops` (0-2) frame
    intervals so layout can settle, then calls `typeset`. Scheduling again
    before that cancels the pending run.
    """

    def __init__(self, typeset: Callable[[], None], delay: float = 0.05, frame_hops: int = 1,
                 frame_interval: float = 1 / 60, timer_factory=threading.Timer):
        self._typeset = typeset
        self.delay = delay
        self.frame_hops = max(0, min(2, frame_hops))
        self.frame_interval = frame_interval
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def schedule(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._start_locked(self.delay, self._generation, self.frame_hops)

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self):
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _start_locked(self, delay, generation, hops):
        timer = self._timer_factory(delay, self._fire, args=(generation, hops))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _fire(self, generation, hops):
        with self._lock:
            if generation != self._generation:
                return
            if hops > 0:
                self._start_locked(self.frame_interval, generation, hops - 1)
                return
            self._timer = None
        try:
            self._typeset()
        except Exception:
            logger.exception("[formatter] typeset failed")


class IncrementalFormatter:
    """Formats a growing text and appends only the new HTML to a sink.

    Text is rendered up to flush points: a math region closing at top level,
    whitespace after a sentence end, the first whitespace once the pending
    buffer passes flush_threshold characters, and finalize(). Sentence and
    length flushes are withheld inside code, pipe tables and open bold spans
    until the region ends. Flush points are
    positions in the cumulative text, so the fragments are the same however
    the text was chunked.
    """

    def __init__(self, on_append: Optional[Callable[[str], None]] = None,
                 scheduler: Optional[TypesetScheduler] = None,
                 on_reset: Optional[Callable[[], None]] = None,
                 flush_threshold: int = FLUSH_THRESHOLD):
        self._on_append = on_append
        self._on_reset = on_reset
        self._scheduler = scheduler
        self._scanner = MathScanner(flush_threshold)
        self._source = ""
        self._flushed = 0
        self._next_point = 0
        self.fragments: List[str] = []

    @property
    def html(self) -> str:
        return "".join(self.fragments)

    @property
    def state(self) -> MathBoundaryState:
        return self._scanner.state

    @property
    def pending(self) -> str:
        return self._scanner.text[self._flushed:]

    def append(self, chunk: str) -> List[str]:
        if not chunk:
            return []
        self._source += chunk
        self._scanner.feed(chunk.replace(PLACEHOLDER_MARK, ""))
        return self._emit(self._take_points())

    def finalize(self) -> List[str]:
        self._scanner.finish()
        points = self._take_points()
        end = len(self._scanner.text)
        if end > self._flushed and (not points or points[-1] < end):
            points.append(end)
        added = self._emit(points)
        # the next append starts a fresh scan after the rendered text
        self._scanner.reset()
        self._flushed = 0
        self._next_point = 0
        return added

    def update(self, text: str) -> List[str]:
        if text.startswith(self._source):
            return self.append(text[len(self._source):])
        return self.replace(text)

    def replace(self, text: str) -> List[str]:
        if self._scheduler:
            self._scheduler.cancel()
        self._scanner.reset()
        self._source = ""
        self._flushed = 0
        self._next_point = 0
        self.fragments = []
        if self._on_reset:
            self._on_reset()
        return self.append(text)

    def _take_points(self) -> List[int]:
        points = self._scanner.flush_points[self._next_point:]
        self._next_point = len(self._scanner.flush_points)
        return points

    def _emit(self, points: List[int]) -> List[str]:
        text = self._scanner.text
        added = []
        for point in points:
            start = self._flushed
            piece = text[start:point]
            self._flushed = point
            if piece:
                line_start = start == 0 or text[start - 1] == "\n"
                added.append(format_text(piece, block=False, line_start=line_start))
        for fragment in added:
            self.fragments.append(fragment)
            if self._on_append:
                self._on_append(fragment)
        if added and self._scheduler:
            self._scheduler.schedule()
        return added
