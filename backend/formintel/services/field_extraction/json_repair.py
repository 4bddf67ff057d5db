"""
JSON Syntax Repair
==================

Deterministic repair of almost-JSON emitted by the field classifier.

Repair is a left-to-right pipeline of pure ``str -> str`` steps. A step
that leaves its input untouched is not reported; the names of the steps
that did change the text are returned with the result so callers can log
exactly which fixes were needed.

Steps, in order:

1. strip_comments          - ``// line`` and ``/* block */`` comments
2. normalize_quotes        - single-quoted strings become double-quoted
3. quote_bare_keys         - ``{name: 1}`` becomes ``{"name": 1}``
4. insert_missing_colons   - ``{"a" 1}`` becomes ``{"a": 1}``
5. insert_missing_commas   - ``[1 2]`` / ``{"a": 1 "b": 2}``
6. strip_trailing_commas   - ``[1, 2,]`` becomes ``[1, 2]``

Steps 1 and 2 work on raw characters (they must run before tokenising,
since comments and single quotes break the tokenizer's notion of a string).
Steps 3-6 work on a token stream that keeps every character, so joining
the tokens back together always reproduces the input exactly when no
change is made.

Repair never invents values. It only fixes punctuation between the
values the model did produce.
"""

import re
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepairResult:
    """Repaired text plus the names of the steps that changed it."""
    text: str
    applied: Tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.applied)


# ---------------------------------------------------------------------------
# Character-level steps
# ---------------------------------------------------------------------------

def strip_comments(text: str) -> str:
    """Remove JS-style comments that appear outside string literals."""
    out: List[str] = []
    i = 0
    n = len(text)
    quote: Optional[str] = None

    while i < n:
        ch = text[i]

        if quote:
            out.append(ch)
            if ch == '\\' and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch in ('"', "'"):
            quote = ch
            out.append(ch)
            i += 1
            continue

        if ch == '/' and i + 1 < n:
            nxt = text[i + 1]
            if nxt == '/':
                end = text.find('\n', i)
                i = n if end == -1 else end
                continue
            if nxt == '*':
                end = text.find('*/', i + 2)
                i = n if end == -1 else end + 2
                continue

        out.append(ch)
        i += 1

    return ''.join(out)


def normalize_quotes(text: str) -> str:
    """
    Rewrite single-quoted string literals as double-quoted ones.

    Apostrophes inside double-quoted strings are left alone; double quotes
    inside a single-quoted literal are escaped.
    """
    out: List[str] = []
    i = 0
    n = len(text)
    quote: Optional[str] = None

    while i < n:
        ch = text[i]

        if quote == '"':
            out.append(ch)
            if ch == '\\' and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                quote = None
            i += 1
            continue

        if quote == "'":
            if ch == '\\' and i + 1 < n:
                nxt = text[i + 1]
                # \' is not a valid JSON escape
                out.append("'" if nxt == "'" else ch + nxt)
                i += 2
                continue
            if ch == "'":
                out.append('"')
                quote = None
            elif ch == '"':
                out.append('\\"')
            else:
                out.append(ch)
            i += 1
            continue

        if ch == '"':
            quote = '"'
            out.append(ch)
        elif ch == "'":
            quote = "'"
            out.append('"')
        else:
            out.append(ch)
        i += 1

    return ''.join(out)


# ---------------------------------------------------------------------------
# Token-level steps
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(r'''
      (?P<string>"(?:[^"\\]|\\.)*"?)
    | (?P<punct>[{}\[\]:,])
    | (?P<ws>\s+)
    | (?P<atom>[A-Za-z0-9_$+\-.]+)
    | (?P<other>.)
''', re.VERBOSE | re.DOTALL)

_NUMBER_RE = re.compile(r'^-?\d+(\.\d+)?([eE][+-]?\d+)?$')
_LITERALS = ('true', 'false', 'null')

Token = Tuple[str, str]


def tokenize(text: str) -> List[Token]:
    """Split text into (kind, value) tokens; ''.join of values equals text."""
    return [(m.lastgroup, m.group()) for m in _TOKEN_RE.finditer(text)]


def _render(tokens: List[Token]) -> str:
    return ''.join(value for _, value in tokens)


def _significant(tokens: List[Token]) -> List[int]:
    return [i for i, (kind, _) in enumerate(tokens) if kind != 'ws']


def quote_bare_keys(text: str) -> str:
    """Quote identifiers in key position (directly followed by ``:``)."""
    tokens = tokenize(text)
    sig = _significant(tokens)

    for pos, idx in enumerate(sig):
        kind, value = tokens[idx]
        if kind != 'atom' or value in _LITERALS or _NUMBER_RE.match(value):
            continue
        next_value = tokens[sig[pos + 1]][1] if pos + 1 < len(sig) else None
        # A missing comma before the key is fixed by a later step
        if next_value == ':':
            tokens[idx] = ('string', f'"{value}"')

    return _render(tokens)


def _is_value_token(kind: str) -> bool:
    return kind in ('string', 'atom')


def _insert_separators(text: str, colons: bool, commas: bool) -> str:
    """
    Walk the token stream with a stack of container frames and insert the
    separators a well-formed document would have.

    Object frames move key -> colon -> value -> comma; array frames move
    value -> comma. A value arriving while a frame expects a separator means
    one is missing.
    """
    tokens = tokenize(text)
    out: List[Token] = []
    # Each frame is [container, expecting]
    stack: List[List[str]] = []

    for kind, value in tokens:
        if kind in ('ws', 'other'):
            out.append((kind, value))
            continue

        frame = stack[-1] if stack else None
        opens = kind == 'punct' and value in '{['

        if _is_value_token(kind) or opens:
            if frame is not None:
                container, expecting = frame
                if container == 'obj':
                    if expecting == 'colon' and colons:
                        out.append(('punct', ':'))
                        frame[1] = 'comma'
                    elif expecting == 'colon':
                        frame[1] = 'comma'
                    elif expecting == 'value':
                        frame[1] = 'comma'
                    elif expecting == 'key':
                        frame[1] = 'colon'
                    elif expecting == 'comma' and not opens:
                        if commas:
                            out.append(('punct', ','))
                        frame[1] = 'colon'
                else:
                    if expecting == 'comma' and commas:
                        out.append(('punct', ','))
                    frame[1] = 'comma'
            out.append((kind, value))
            if opens:
                stack.append(['obj', 'key'] if value == '{' else ['arr', 'value'])
            continue

        if value in '}]':
            if stack:
                stack.pop()
            if stack:
                stack[-1][1] = 'comma'
        elif value == ':':
            if frame is not None and frame[0] == 'obj':
                frame[1] = 'value'
        elif value == ',':
            if frame is not None:
                frame[1] = 'key' if frame[0] == 'obj' else 'value'
        out.append((kind, value))

    return _render(out)


def insert_missing_colons(text: str) -> str:
    return _insert_separators(text, colons=True, commas=False)


def insert_missing_commas(text: str) -> str:
    return _insert_separators(text, colons=False, commas=True)


def strip_trailing_commas(text: str) -> str:
    """Drop commas whose next significant token closes a container."""
    tokens = tokenize(text)
    sig = _significant(tokens)
    drop = set()
    for pos, idx in enumerate(sig[:-1]):
        if tokens[idx] == ('punct', ',') and tokens[sig[pos + 1]][1] in ('}', ']'):
            drop.add(idx)
    if not drop:
        return text
    return _render([t for i, t in enumerate(tokens) if i not in drop])


RepairStep = Callable[[str], str]

REPAIR_STEPS: Tuple[Tuple[str, RepairStep], ...] = (
    ('strip_comments', strip_comments),
    ('normalize_quotes', normalize_quotes),
    ('quote_bare_keys', quote_bare_keys),
    ('insert_missing_colons', insert_missing_colons),
    ('insert_missing_commas', insert_missing_commas),
    ('strip_trailing_commas', strip_trailing_commas),
)


def repair_json(text: str, steps: Tuple[Tuple[str, RepairStep], ...] = REPAIR_STEPS) -> RepairResult:
    """
    Run every repair step over ``text`` in order.

    Returns:
        RepairResult with the final text and the names of steps that changed it
    """
    applied = []
    for name, step in steps:
        repaired = step(text)
        if repaired != text:
            applied.append(name)
            text = repaired
    if applied:
        logger.debug(f"JSON repair applied: {', '.join(applied)}")
    return RepairResult(text=text, applied=tuple(applied))


# ---------------------------------------------------------------------------
# Helpers shared with the classifier
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r'```(?:json|JSON)?\s*(.*?)```', re.DOTALL)


def strip_markdown_fences(text: str) -> str:
    """Return the body of the first fenced block, or the stripped text."""
    text = text.strip()
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    # An opening fence with no closing one (truncated output)
    if text.startswith('```'):
        return text.split('\n', 1)[1] if '\n' in text else ''
    return text


def extract_json_candidate(text: str) -> Optional[str]:
    """
    Find the first fenced or bare JSON array/object in free text.

    A bare candidate runs from the first ``[`` or ``{`` to the last matching
    closer; if there is no closer the rest of the text is returned so repair
    still gets a chance at it.
    """
    match = _FENCE_RE.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()

    starts = [i for i in (text.find('['), text.find('{')) if i != -1]
    if not starts:
        return None
    start = min(starts)
    closer = ']' if text[start] == '[' else '}'
    end = text.rfind(closer)
    if end <= start:
        return text[start:]
    return text[start:end + 1]


def is_likely_truncated(text: str) -> bool:
    """Unbalanced braces or brackets usually mean the model ran out of tokens."""
    return text.count('{') != text.count('}') or text.count('[') != text.count(']')
