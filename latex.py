import json
import re
from dataclasses import dataclass, field

# === Macro families ===
ACCENT_MACROS = ["vec", "mathbf", "mathbb", "mathcal", "hat", "bar", "underline", "overline"]
STRUCTURE_MACROS = ["frac", "dfrac", "tfrac", "sqrt", "binom", "pmatrix", "bmatrix", "vmatrix"]
SET_MACROS = ["langle", "rangle"]
SYMBOL_MACROS = [
    "cdot", "times", "div", "pm", "mp", "leq", "geq", "neq", "approx", "sim",
    "cong", "equiv", "propto", "forall", "exists", "in", "notin", "subset",
    "supset", "subseteq", "supseteq", "cap", "cup", "emptyset", "rightarrow",
    "leftarrow", "leftrightarrow", "Rightarrow", "Leftarrow", "Leftrightarrow",
    "mapsto", "implies", "iff", "neg", "wedge", "vee", "perp", "parallel",
    "angle", "triangle", "square", "circ", "bullet", "star", "ast", "oplus",
    "otimes", "odot",
]
GREEK_LOWER = [
    "alpha", "beta", "gamma", "delta", "epsilon", "varepsilon", "zeta", "eta",
    "theta", "vartheta", "iota", "kappa", "lambda", "mu", "nu", "xi", "pi",
    "varpi", "rho", "varrho", "sigma", "varsigma", "tau", "upsilon", "phi",
    "varphi", "chi", "psi", "omega",
]
GREEK_UPPER = ["Gamma", "Delta", "Theta", "Lambda", "Xi", "Pi", "Sigma", "Upsilon", "Phi", "Psi", "Omega"]
CALCULUS_MACROS = ["nabla", "partial", "sum", "prod", "int", "lim"]
FUNCTION_MACROS = [
    "log", "ln", "sin", "cos", "tan", "sec", "csc", "cot", "arcsin", "arccos",
    "arctan", "sinh", "cosh", "tanh", "exp", "min", "max", "det", "dim", "ker",
    "deg", "arg", "gcd", "lcm", "to",
]
ENVIRONMENT_MACROS = ["begin", "end"]
TEXT_MACROS = ["text", "textrm", "textit", "textbf", "textsf", "texttt"]

# Macros that take braced arguments when they show up outside math delimiters
TEXT_BRACED_MACROS = STRUCTURE_MACROS + ACCENT_MACROS + TEXT_MACROS
# Macros that stand alone as a symbol
TEXT_SYMBOL_MACROS = GREEK_LOWER + GREEK_UPPER + SYMBOL_MACROS + CALCULUS_MACROS + ["infty"]

MACRO_NAMES = (
    SET_MACROS + ACCENT_MACROS + SYMBOL_MACROS + STRUCTURE_MACROS + GREEK_LOWER
    + GREEK_UPPER + CALCULUS_MACROS + FUNCTION_MACROS + ENVIRONMENT_MACROS
    + TEXT_MACROS + ["infty"]
)

# Longest names first so alternation prefers "varepsilon" over "var..."-less matches
MACRO_PATTERN = "|".join(sorted(set(MACRO_NAMES), key=len, reverse=True))

_RE_DOUBLE_BEFORE_MACRO = re.compile(r"\\{2,}(?=(?:%s)\b)" % MACRO_PATTERN)
_RE_DOUBLE_ESCAPED_MACRO = re.compile(r"\\\\(%s)\b" % MACRO_PATTERN)
_RE_INLINE_DOLLARS = re.compile(r"(?<![\\$])\$(?!\$)([^$\n]{1,300}?)(?<!\\)\$(?!\$)")

MATH_TRIGGER_RE = re.compile(r"(\$|\\\(|\\\[|\\begin|√|⟨|_\{|\\\^)")

# JSON escapes that eat the first letter of a macro: "\frac" -> form-feed + "rac"
_CONTROL_ESCAPES = {"\f": "f", "\b": "b", "\t": "t", "\n": "n", "\r": "r"}


def _build_control_repairs():
    repairs = []
    for ctrl, letter in _CONTROL_ESCAPES.items():
        tails = sorted({name[1:] for name in MACRO_NAMES if name.startswith(letter) and len(name) > 2},
                       key=len, reverse=True)
        if tails:
            repairs.append((re.compile(re.escape(ctrl) + r"(?=(?:%s)\b)" % "|".join(tails)), "\\" + letter))
    return repairs


_CONTROL_REPAIRS = _build_control_repairs()


@dataclass
class LatexScan:
    double_escaped_macros: list = field(default_factory=list)
    unmatched_inline_pairs: int = 0
    unmatched_display_pairs: int = 0
    odd_dollar_blocks: bool = False

    def as_dict(self):
        return {
            "doubleEscapedMacros": self.double_escaped_macros,
            "unmatchedInlinePairs": self.unmatched_inline_pairs,
            "unmatchedDisplayPairs": self.unmatched_display_pairs,
            "oddDollarBlocks": self.odd_dollar_blocks,
        }


def normalize_delimiters(value):
    return (value
            .replace("\\\\(", "\\(")
            .replace("\\\\)", "\\)")
            .replace("\\\\[", "\\[")
            .replace("\\\\]", "\\]"))


def collapse_macro_escapes(value):
    return _RE_DOUBLE_BEFORE_MACRO.sub(lambda _m: "\\", value)


def normalize_latex(value, convert_inline_math=True, collapse_delimiters=True, collapse_macros=True):
    """Bring LLM-produced LaTeX into the shape MathJax expects.

    Single-dollar spans become \\( ... \\), doubled delimiter backslashes are
    collapsed, and so are doubled backslashes in front of known macros.
    """
    if not value:
        return ""
    out = value
    if convert_inline_math:
        out = _RE_INLINE_DOLLARS.sub(lambda m: "\\(" + m.group(1) + "\\)", out)
    if collapse_delimiters:
        out = normalize_delimiters(out)
    if collapse_macros:
        out = collapse_macro_escapes(out)
    return out


def scan_latex(value):
    src = value or ""
    doubled = []
    for m in _RE_DOUBLE_ESCAPED_MACRO.finditer(src):
        if m.group(1) not in doubled:
            doubled.append(m.group(1))
    return LatexScan(
        double_escaped_macros=doubled,
        unmatched_inline_pairs=src.count("\\(") - src.count("\\)"),
        unmatched_display_pairs=src.count("\\[") - src.count("\\]"),
        odd_dollar_blocks=src.count("$$") % 2 == 1,
    )


def has_latex_issues(scan):
    return bool(
        scan.double_escaped_macros
        or scan.unmatched_inline_pairs != 0
        or scan.unmatched_display_pairs != 0
        or scan.odd_dollar_blocks
    )


def repair_control_escapes(value):
    """Restore macros whose leading backslash was consumed as a JSON escape."""
    if not value or not isinstance(value, str):
        return value
    for pattern, replacement in _CONTROL_REPAIRS:
        value = pattern.sub(lambda _m, r=replacement: r, value)
    return value


_FIX_COMMANDS = [
    "frac", "sqrt", "sum", "int", "lim", "sin", "cos", "tan", "log", "ln",
    "prod", "alpha", "beta", "gamma", "delta", "theta", "pi", "infty",
    "leq", "geq", "neq", "cdot", "times", "pm", "to", "partial", "nabla",
    "mathbf", "vec", "hat", "bar", "underline", "overline",
]
_RE_FIX_DELIMS = re.compile(r"(?<!\\)\\([()\[\]])")
_RE_FIX_COMMANDS = re.compile(r"(?<!\\)\\(%s)\b" % "|".join(_FIX_COMMANDS))


def fix_latex_escaping(raw):
    """Double single backslashes in front of delimiters and common macros in raw JSON text."""
    out = _RE_FIX_DELIMS.sub(lambda m: "\\\\" + m.group(1), raw)
    return _RE_FIX_COMMANDS.sub(lambda m: "\\\\" + m.group(1), out)


def parse_json_lenient(raw):
    """Parse JSON that may contain invalid escapes like LaTeX \\frac{}{} or \\(."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    # Valid JSON escapes: \", \\, \/, \b, \f, \n, \r, \t, \uXXXX
    sanitized = re.sub(r'\\(?!["\\/bfnrtu])', r'\\\\', raw)
    return json.loads(sanitized)


def extract_balanced_object(text):
    """Return the first top-level {...} span, skipping braces inside strings."""
    depth = 0
    start = -1
    in_str = False
    escaped = False
    for i, ch in enumerate(text):
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start != -1:
                return text[start:i + 1]
    return None


def try_parse_json(text):
    """Best-effort parse of an LLM response into a dict. Returns None on failure."""
    cleaned = (text or "").strip()
    if not cleaned:
        return None

    candidates = [cleaned]
    if cleaned.startswith("```"):
        without_fence = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE)
        without_fence = re.sub(r"```$", "", without_fence).strip()
        if without_fence:
            candidates.append(without_fence)
    greedy = re.search(r"\{[\s\S]*\}", cleaned)
    if greedy:
        candidates.append(greedy.group(0))
    first_brace = cleaned.find("{")
    if first_brace > 0:
        candidates.append(cleaned[first_brace:])
    fixed = fix_latex_escaping(cleaned)
    if fixed != cleaned:
        candidates.append(fixed)
        fixed_greedy = re.search(r"\{[\s\S]*\}", fixed)
        if fixed_greedy:
            candidates.append(fixed_greedy.group(0))

    for candidate in candidates:
        try:
            parsed = parse_json_lenient(candidate)
        except ValueError:
            continue
        if isinstance(parsed, str):
            try:
                parsed = json.loads(parsed)
            except ValueError:
                continue
        if isinstance(parsed, dict):
            return parsed
    return None
