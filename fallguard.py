#!/usr/bin/env python3
"""
fallguard - fall_through(bool) directive rewriting for C++

High-level goals:
- Tokenize a C++ translation unit (built-in lexer, or libclang when asked)
- Find switch statements governed by a preceding `fall_through(false);`
- Inject `break;` at the end of case segments that would silently fall into
  the next case
- Strip every directive so that an unmodified compiler accepts the output
- Emit diagnostics as structured values / JSON for CI

The passes run strictly forward over one immutable token list:
TokenStream -> StructuralScan -> SwitchRegionExtractor -> TerminatorClassifier
-> Rewriter. Only the Rewriter produces text.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional, Tuple, Literal, Any, Set
import argparse
import bisect
from concurrent.futures import ProcessPoolExecutor
import importlib.util
import json
import os
import re
import shlex
import sys

import yaml


__version__ = "0.1.0"


# ============================================================
# =============== SOURCE LOCATION & TOKENS ===================
# ============================================================

@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int


@dataclass(frozen=True)
class SourceRange:
    file: str
    line_start: int
    col_start: int
    line_end: int
    col_end: int
    offset_start: int = 0
    offset_end: int = 0

    @property
    def start(self) -> SourceLocation:
        return SourceLocation(self.file, self.line_start, self.col_start)

    def join(self, other: "SourceRange") -> "SourceRange":
        return SourceRange(
            file=self.file,
            line_start=self.line_start,
            col_start=self.col_start,
            line_end=other.line_end,
            col_end=other.col_end,
            offset_start=self.offset_start,
            offset_end=other.offset_end,
        )

    def to_json_obj(self) -> Dict[str, Any]:
        return {
            "file": self.file,
            "line_start": self.line_start,
            "col_start": self.col_start,
            "line_end": self.line_end,
            "col_end": self.col_end,
        }


class TokenKind(Enum):
    IDENTIFIER = "identifier"
    KEYWORD = "keyword"
    PUNCTUATOR = "punctuator"
    NUMBER = "number"
    STRING = "string"
    CHAR = "char"
    ATTR_OPEN = "attribute-open"    # [[
    ATTR_CLOSE = "attribute-close"  # ]]
    COMMENT = "comment"
    WHITESPACE = "whitespace"
    PREPROCESSOR = "preprocessor"   # a whole '#' line, continuations included


TRIVIA_KINDS = frozenset({TokenKind.WHITESPACE, TokenKind.COMMENT, TokenKind.PREPROCESSOR})
LITERAL_KINDS = frozenset({TokenKind.NUMBER, TokenKind.STRING, TokenKind.CHAR})


@dataclass(frozen=True)
class Token:
    """
    One lexeme of the translation unit. `text` is the exact source slice, so
    the concatenation of every token's text reproduces the input.
    """
    kind: TokenKind
    text: str
    span: SourceRange

    @property
    def is_trivia(self) -> bool:
        return self.kind in TRIVIA_KINDS

    def is_punct(self, text: str) -> bool:
        return self.kind is TokenKind.PUNCTUATOR and self.text == text

    def is_keyword(self, text: str) -> bool:
        return self.kind is TokenKind.KEYWORD and self.text == text


CPP_KEYWORDS = frozenset({
    "alignas", "alignof", "asm", "auto", "bool", "break", "case", "catch",
    "char", "char8_t", "char16_t", "char32_t", "class", "co_await",
    "co_return", "co_yield", "concept", "const", "consteval", "constexpr",
    "constinit", "const_cast", "continue", "decltype", "default", "delete",
    "do", "double", "dynamic_cast", "else", "enum", "explicit", "export",
    "extern", "false", "float", "for", "friend", "goto", "if", "inline",
    "int", "long", "mutable", "namespace", "new", "noexcept", "nullptr",
    "operator", "private", "protected", "public", "register",
    "reinterpret_cast", "requires", "return", "short", "signed", "sizeof",
    "static", "static_assert", "static_cast", "struct", "switch", "template",
    "this", "thread_local", "throw", "true", "try", "typedef", "typeid",
    "typename", "union", "unsigned", "using", "virtual", "void", "volatile",
    "wchar_t", "while", "_Noreturn", "_Bool", "_Alignas",
})

PUNCTUATORS = (
    "%:%:", "...", "<=>", "<<=", ">>=", "->*",
    "::", "->", "++", "--", "<<", ">>", "<=", ">=", "==", "!=", "&&", "||",
    "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", ".*", "##", "%:",
    "{", "}", "[", "]", "(", ")", "<", ">", ";", ":", ",", ".", "?",
    "+", "-", "*", "/", "%", "^", "&", "|", "~", "!", "=", "#", "\\",
)


# ============================================================
# ======================== ERRORS ============================
# ============================================================

MISPLACED_DIRECTIVE = "MisplacedDirectiveError"
INVALID_DIRECTIVE_ARGUMENT = "InvalidDirectiveArgument"
UNTERMINATED_STATEMENT = "UnterminatedStatement"
NESTED_CASE_LABEL = "NestedCaseLabel"
UNGOVERNABLE_SWITCH_BODY = "UngovernableSwitchBody"
INPUT_ERROR = "InputError"


@dataclass
class Diagnostic:
    """
    A structured report about one translation unit. Recoverable diagnostics
    never stop processing; a fatal one is carried in TransformResult.fatal.
    """
    kind: str
    severity: Literal["error", "warning"]
    message: str
    location: Optional[SourceRange] = None

    def format(self, path: Optional[str] = None) -> str:
        if self.location is not None:
            where = f"{self.location.file}:{self.location.line_start}:{self.location.col_start}"
        else:
            where = path or "<input>"
        return f"{where}: {self.severity}: {self.kind}: {self.message}"

    def to_json_obj(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity,
            "message": self.message,
            "location": self.location.to_json_obj() if self.location else None,
        }


class FallguardError(Exception):
    """Base class for every error raised by fallguard."""


class ConfigError(FallguardError):
    """Raised when an explicitly requested configuration file cannot be used."""


class FatalTransformError(FallguardError):
    """
    Structural problems that make any rewriting unsafe. The run is aborted and
    no output is produced for the translation unit.
    """
    kind = "FatalTransformError"

    def __init__(self, message: str, location: Optional[SourceRange] = None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location

    def to_diagnostic(self) -> Diagnostic:
        return Diagnostic(kind=self.kind, severity="error", message=self.message, location=self.location)


class MalformedInputError(FatalTransformError):
    """Unbalanced or mismatched braces/parens, or an unterminated literal."""
    kind = "MalformedInputError"


class UnterminatedSwitchBodyError(FatalTransformError):
    """A switch statement whose body never closes before the end of input."""
    kind = "UnterminatedSwitchBodyError"


# ============================================================
# ======================= TOKENIZERS =========================
# ============================================================

_WHITESPACE_RE = re.compile(r"[ \t\f\v\r\n]+")
_LINE_COMMENT_RE = re.compile(r"//(?:\\\r?\n|[^\n])*")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_RAW_STRING_RE = re.compile(r'(?:u8|u|U|L)?R"([^ ()\\\t\v\f\r\n"]{0,16})\(')
_QUOTE_START_RE = re.compile(r"(?:u8|u|U|L)?[\"']")
_STRING_RE = re.compile(r'(?:u8|u|U|L)?"(?:[^"\\\n]|\\.)*"', re.DOTALL)
_CHAR_RE = re.compile(r"(?:u8|u|U|L)?'(?:[^'\\\n]|\\.)*'", re.DOTALL)
_NUMBER_RE = re.compile(r"\.?[0-9](?:[eEpP][+-]|'[0-9A-Za-z_]|[0-9A-Za-z_.])*")
_IDENTIFIER_RE = re.compile(r"[^\W\d]\w*")
_PUNCTUATOR_RE = re.compile(
    "|".join(re.escape(p) for p in sorted(PUNCTUATORS, key=len, reverse=True))
)
_STRING_LITERAL_PREFIX_RE = re.compile(r"(?:u8|u|U|L)?R?\"")
_CHAR_LITERAL_PREFIX_RE = re.compile(r"(?:u8|u|U|L)?'")


class _LineIndex:
    """Maps character offsets to 1-based (line, column) pairs."""

    def __init__(self, source: str) -> None:
        self.starts = [0] + [m.end() for m in re.finditer("\n", source)]

    def locate(self, offset: int) -> Tuple[int, int]:
        line = bisect.bisect_right(self.starts, offset)
        return line, offset - self.starts[line - 1] + 1


def _make_token(kind: TokenKind, source: str, start: int, end: int, lines: _LineIndex, path: str) -> Token:
    line_start, col_start = lines.locate(start)
    line_end, col_end = lines.locate(end)
    span = SourceRange(path, line_start, col_start, line_end, col_end, start, end)
    return Token(kind=kind, text=source[start:end], span=span)


def _at_line_start(source: str, pos: int) -> bool:
    i = pos - 1
    while i >= 0 and source[i] in " \t\f\v":
        i -= 1
    return i < 0 or source[i] == "\n"


def _preprocessor_end(source: str, pos: int, end: int) -> int:
    """End offset (exclusive, newline not included) of the '#' line at pos."""
    i = pos
    while i < end:
        ch = source[i]
        if ch == "\\" and source.startswith("\n", i + 1):
            i += 2
            continue
        if ch == "\\" and source.startswith("\r\n", i + 1):
            i += 3
            continue
        if ch == "\n":
            break
        if source.startswith("/*", i):
            close = source.find("*/", i + 2, end)
            if close < 0:
                return end
            i = close + 2
            continue
        if source.startswith("//", i):
            i = _LINE_COMMENT_RE.match(source, i, end).end()
            continue
        i += 1
    return i


def _lex(source: str, path: str, lines: _LineIndex, start: int, end: int) -> List[Token]:
    tokens: List[Token] = []
    pos = start
    at_line_start = _at_line_start(source, start)

    def _fail(message: str, offset: int) -> MalformedInputError:
        return MalformedInputError(message, _make_token(TokenKind.PUNCTUATOR, source, offset, offset, lines, path).span)

    while pos < end:
        ch = source[pos]
        kind: TokenKind

        match = _WHITESPACE_RE.match(source, pos, end)
        if match:
            tokens.append(_make_token(TokenKind.WHITESPACE, source, pos, match.end(), lines, path))
            if "\n" in match.group(0):
                at_line_start = True
            pos = match.end()
            continue

        if ch == "#" and at_line_start:
            stop = _preprocessor_end(source, pos, end)
            tokens.append(_make_token(TokenKind.PREPROCESSOR, source, pos, stop, lines, path))
            pos = stop
            continue

        at_line_start = False

        if source.startswith("//", pos):
            stop = _LINE_COMMENT_RE.match(source, pos, end).end()
            tokens.append(_make_token(TokenKind.COMMENT, source, pos, stop, lines, path))
            pos = stop
            continue

        if source.startswith("/*", pos):
            match = _BLOCK_COMMENT_RE.match(source, pos, end)
            if not match:
                raise _fail("unterminated block comment", pos)
            tokens.append(_make_token(TokenKind.COMMENT, source, pos, match.end(), lines, path))
            pos = match.end()
            continue

        match = _RAW_STRING_RE.match(source, pos, end)
        if match:
            terminator = ")" + match.group(1) + '"'
            close = source.find(terminator, match.end(), end)
            if close < 0:
                raise _fail("unterminated raw string literal", pos)
            stop = close + len(terminator)
            tokens.append(_make_token(TokenKind.STRING, source, pos, stop, lines, path))
            pos = stop
            continue

        if _QUOTE_START_RE.match(source, pos, end):
            match = _STRING_RE.match(source, pos, end) or _CHAR_RE.match(source, pos, end)
            if not match:
                raise _fail("unterminated string or character literal", pos)
            kind = TokenKind.STRING if match.group(0).endswith('"') else TokenKind.CHAR
            tokens.append(_make_token(kind, source, pos, match.end(), lines, path))
            pos = match.end()
            continue

        match = _NUMBER_RE.match(source, pos, end)
        if match:
            tokens.append(_make_token(TokenKind.NUMBER, source, pos, match.end(), lines, path))
            pos = match.end()
            continue

        match = _IDENTIFIER_RE.match(source, pos, end)
        if match:
            kind = TokenKind.KEYWORD if match.group(0) in CPP_KEYWORDS else TokenKind.IDENTIFIER
            tokens.append(_make_token(kind, source, pos, match.end(), lines, path))
            pos = match.end()
            continue

        match = _PUNCTUATOR_RE.match(source, pos, end)
        stop = match.end() if match else pos + 1
        tokens.append(_make_token(TokenKind.PUNCTUATOR, source, pos, stop, lines, path))
        pos = stop

    return tokens


def _join_tokens(kind: TokenKind, run: List[Token]) -> Token:
    return Token(
        kind=kind,
        text="".join(t.text for t in run),
        span=run[0].span.join(run[-1].span),
    )


def _next_bracket(tokens: List[Token], index: int) -> int:
    """Index of the first token after `index` that is not whitespace or a comment."""
    index += 1
    while index < len(tokens) and tokens[index].kind in (TokenKind.WHITESPACE, TokenKind.COMMENT):
        index += 1
    return index


def _fuse_attribute_brackets(tokens: List[Token]) -> List[Token]:
    """
    Turn consecutive '[' '[' into one attribute-open token and its matching
    ']' ']' into one attribute-close token. Whitespace and comments between the
    two brackets become part of the fused token's text. Brackets inside the
    attribute argument list are counted so that `a[b[i]]` outside an attribute
    is left alone.
    """
    fused: List[Token] = []
    inner_depth: Optional[int] = None
    i = 0
    count = len(tokens)
    while i < count:
        token = tokens[i]
        j = _next_bracket(tokens, i)
        following = tokens[j] if j < count else None
        if token.is_punct("["):
            if inner_depth is None and following is not None and following.is_punct("["):
                fused.append(_join_tokens(TokenKind.ATTR_OPEN, tokens[i:j + 1]))
                inner_depth = 0
                i = j + 1
                continue
            if inner_depth is not None:
                inner_depth += 1
        elif token.is_punct("]") and inner_depth is not None:
            if inner_depth > 0:
                inner_depth -= 1
            elif following is not None and following.is_punct("]"):
                fused.append(_join_tokens(TokenKind.ATTR_CLOSE, tokens[i:j + 1]))
                inner_depth = None
                i = j + 1
                continue
        fused.append(token)
        i += 1
    return fused


def tokenize(source: str, path: str = "<input>") -> List[Token]:
    """
    Built-in lexer. Produces every byte of `source` as a token (whitespace,
    comments and preprocessor lines included) so the Rewriter can reproduce
    untouched regions exactly.
    """
    lines = _LineIndex(source)
    return _fuse_attribute_brackets(_lex(source, path, lines, 0, len(source)))


def clang_available() -> bool:
    return importlib.util.find_spec("clang") is not None


def _default_clang_args() -> List[str]:
    """
    Determine the clang arguments to use. Users can append additional flags
    via the FALLGUARD_CLANG_ARGS environment variable.
    """
    base = ["-x", "c++", "-std=c++17"]
    extra = os.environ.get("FALLGUARD_CLANG_ARGS")
    if extra:
        base.extend(shlex.split(extra))
    return base


def _byte_to_char_offsets(source: str) -> List[int]:
    offsets: List[int] = []
    for index, ch in enumerate(source):
        offsets.extend([index] * len(ch.encode("utf-8")))
    offsets.append(len(source))
    return offsets


def _clang_token_kind(kind_name: str, text: str) -> TokenKind:
    if kind_name == "KEYWORD":
        return TokenKind.KEYWORD
    if kind_name == "IDENTIFIER":
        return TokenKind.KEYWORD if text in CPP_KEYWORDS else TokenKind.IDENTIFIER
    if kind_name == "LITERAL":
        if _STRING_LITERAL_PREFIX_RE.match(text):
            return TokenKind.STRING
        if _CHAR_LITERAL_PREFIX_RE.match(text):
            return TokenKind.CHAR
        return TokenKind.NUMBER
    if kind_name == "COMMENT":
        return TokenKind.COMMENT
    return TokenKind.PUNCTUATOR


def tokenize_with_clang(
    source: str,
    path: str = "<input>",
    extra_args: Optional[List[str]] = None,
) -> List[Token]:
    """
    Tokenize with libclang's lexer. Clang reports only significant tokens
    (and sometimes comments); the gaps between them are filled with built-in
    trivia tokens and '#' lines are folded into preprocessor tokens, so the
    result has the same shape as `tokenize`.
    """
    from clang import cindex as clang_cindex

    unsaved_name = "fallguard_input.cpp" if path.startswith("<") else path
    args = _default_clang_args() + list(extra_args or [])
    index = clang_cindex.Index.create()
    clang_tu = index.parse(unsaved_name, args=args, unsaved_files=[(unsaved_name, source)], options=0)

    char_offsets = _byte_to_char_offsets(source)
    lines = _LineIndex(source)
    tokens: List[Token] = []
    cursor = 0
    for clang_token in clang_tu.get_tokens(extent=clang_tu.cursor.extent):
        start = char_offsets[clang_token.extent.start.offset]
        end = char_offsets[clang_token.extent.end.offset]
        if start < cursor:
            continue  # swallowed by a preprocessor line
        if start > cursor:
            tokens.extend(_lex(source, path, lines, cursor, start))
        if source[start:end] == "#" and _at_line_start(source, start):
            end = _preprocessor_end(source, start, len(source))
            tokens.append(_make_token(TokenKind.PREPROCESSOR, source, start, end, lines, path))
        else:
            kind = _clang_token_kind(clang_token.kind.name, source[start:end])
            tokens.append(_make_token(kind, source, start, end, lines, path))
        cursor = end
    if cursor < len(source):
        tokens.extend(_lex(source, path, lines, cursor, len(source)))
    return _fuse_attribute_brackets(tokens)


# ============================================================
# ================= TOKEN STREAM ADAPTER =====================
# ============================================================

class TokenStream:
    """
    Read-only view over the token list of one translation unit, with the
    lookahead/seek operations the later passes use. Trivia means whitespace,
    comments and preprocessor lines.
    """

    def __init__(self, tokens: List[Token], path: str = "<input>") -> None:
        self.tokens: List[Token] = list(tokens)
        self.path = path
        self.position = 0

    def __len__(self) -> int:
        return len(self.tokens)

    def __getitem__(self, index: int) -> Token:
        return self.tokens[index]

    def peek(self, offset: int = 0) -> Optional[Token]:
        index = self.position + offset
        if 0 <= index < len(self.tokens):
            return self.tokens[index]
        return None

    def seek(self, index: int) -> None:
        self.position = max(0, min(index, len(self.tokens)))

    def advance(self) -> Optional[Token]:
        token = self.peek()
        if token is not None:
            self.position += 1
        return token

    def is_trivia(self, index: int) -> bool:
        return self.tokens[index].kind in TRIVIA_KINDS

    def next_significant(self, index: int, limit: Optional[int] = None) -> int:
        """First non-trivia index >= index, or `limit` (default: len) if none."""
        end = len(self.tokens) if limit is None else limit
        while index < end and self.tokens[index].kind in TRIVIA_KINDS:
            index += 1
        return min(index, end)

    def prev_significant(self, index: int) -> Optional[int]:
        """Last non-trivia index strictly before index."""
        index -= 1
        while index >= 0 and self.tokens[index].kind in TRIVIA_KINDS:
            index -= 1
        return index if index >= 0 else None

    def significant_indices(self, start: int, end: int) -> List[int]:
        return [i for i in range(start, end) if self.tokens[i].kind not in TRIVIA_KINDS]

    def text(self, start: int, end: int) -> str:
        return "".join(token.text for token in self.tokens[start:end])

    def source_text(self) -> str:
        return self.text(0, len(self.tokens))

    def location(self, index: int) -> Optional[SourceRange]:
        if not self.tokens:
            return None
        index = max(0, min(index, len(self.tokens) - 1))
        return self.tokens[index].span

    def span(self, start: int, end: int) -> Optional[SourceRange]:
        """Range covering tokens [start, end)."""
        if start >= end or not self.tokens:
            return self.location(start)
        return self.tokens[start].span.join(self.tokens[end - 1].span)


# ============================================================
# ================== STRUCTURAL SCANNER ======================
# ============================================================

_OPENER_CLOSERS = {"{": "}", "(": ")", "[": "]"}
_CLOSERS = frozenset(_OPENER_CLOSERS.values())


class StructuralScan:
    """
    One linear pass over the stream recording, per token, the brace and paren
    nesting it sits at and the partner index of every bracket pair. Opening
    and closing tokens sit at the outer depth. Literal and comment tokens are
    atomic, so braces inside them never count.
    """

    def __init__(self, stream: TokenStream) -> None:
        self.stream = stream
        count = len(stream)
        self._brace_depth = [0] * count
        self._paren_depth = [0] * count
        self._partner = [-1] * count
        self._run()

    def depth(self, index: int) -> int:
        return self._brace_depth[index] + self._paren_depth[index]

    def brace_depth(self, index: int) -> int:
        return self._brace_depth[index]

    def paren_depth(self, index: int) -> int:
        return self._paren_depth[index]

    def match(self, index: int) -> int:
        return self._partner[index]

    def is_literal_or_comment(self, index: int) -> bool:
        kind = self.stream[index].kind
        return kind in LITERAL_KINDS or kind is TokenKind.COMMENT

    def is_opener(self, index: int) -> bool:
        token = self.stream[index]
        return token.kind is TokenKind.ATTR_OPEN or (
            token.kind is TokenKind.PUNCTUATOR and token.text in _OPENER_CLOSERS
        )

    def is_closer(self, index: int) -> bool:
        token = self.stream[index]
        return token.kind is TokenKind.ATTR_CLOSE or (
            token.kind is TokenKind.PUNCTUATOR and token.text in _CLOSERS
        )

    def _closes(self, opener: int, closer: int) -> bool:
        token = self.stream[opener]
        if token.kind is TokenKind.ATTR_OPEN:
            return self.stream[closer].kind is TokenKind.ATTR_CLOSE
        return self.stream[closer].is_punct(_OPENER_CLOSERS[token.text])

    def _opens_switch_body(self, index: int) -> bool:
        prev = self.stream.prev_significant(index)
        if prev is None or not self.stream[prev].is_punct(")") or self._partner[prev] < 0:
            return False
        keyword = self.stream.prev_significant(self._partner[prev])
        return keyword is not None and self.stream[keyword].is_keyword("switch")

    def _run(self) -> None:
        stream = self.stream
        stack: List[int] = []
        switch_bodies: Set[int] = set()
        braces = 0
        parens = 0

        for index, token in enumerate(stream.tokens):
            self._brace_depth[index] = braces
            self._paren_depth[index] = parens
            if token.kind in TRIVIA_KINDS or token.kind in LITERAL_KINDS:
                continue

            if self.is_opener(index):
                if token.text == "{":
                    if self._opens_switch_body(index):
                        switch_bodies.add(index)
                    braces += 1
                elif token.text == "(":
                    parens += 1
                stack.append(index)
                continue

            if not self.is_closer(index):
                continue

            if not stack:
                raise MalformedInputError(f"unmatched '{token.text}'", token.span)
            opener = stack.pop()
            if not self._closes(opener, index):
                opened = stream[opener].span
                raise MalformedInputError(
                    f"'{token.text}' closes '{stream[opener].text}' opened at line "
                    f"{opened.line_start}, column {opened.col_start}",
                    token.span,
                )
            self._partner[opener] = index
            self._partner[index] = opener
            if token.text == "}":
                braces -= 1
            elif token.text == ")":
                parens -= 1
            self._brace_depth[index] = braces
            self._paren_depth[index] = parens

        if stack:
            for opener in stack:
                if opener in switch_bodies:
                    raise UnterminatedSwitchBodyError(
                        "switch body is never closed before the end of input",
                        stream[opener].span,
                    )
            innermost = stream[stack[-1]]
            raise MalformedInputError(f"'{innermost.text}' is never closed", innermost.span)


# ============================================================
# ======================== STATEMENTS ========================
# ============================================================

class StatementKind(Enum):
    EMPTY = "empty"
    COMPOUND = "compound"
    ATTRIBUTED = "attributed"
    LABELED = "labeled"
    SELECTION = "selection"    # if, switch
    ITERATION = "iteration"    # while, for, do
    TRY = "try"
    JUMP = "jump"              # break, continue, return, co_return, goto, throw
    EXPRESSION = "expression"  # expression and declaration statements


@dataclass
class Statement:
    kind: StatementKind
    start: int  # first token index
    end: int    # exclusive, trailing trivia not included
    keyword: Optional[str] = None
    inner: Optional["Statement"] = None
    attributes: List[int] = field(default_factory=list)  # ATTR_OPEN indices
    complete: bool = True


_JUMP_KEYWORDS = frozenset({"break", "continue", "return", "co_return", "goto", "throw"})


class StatementParser:
    """
    Delimits C++ statements inside function bodies. Only the structure needed
    to find statement boundaries is recognized; expressions and declarations
    are skipped up to their ';' with every bracketed group treated as opaque.
    """

    def __init__(self, stream: TokenStream, scan: StructuralScan) -> None:
        self.stream = stream
        self.scan = scan

    def _next(self, index: int, limit: int) -> int:
        return self.stream.next_significant(index, limit)

    def _is(self, index: int, limit: int, text: str) -> bool:
        return index < limit and self.stream[index].text == text and not self.stream.is_trivia(index)

    def case_label_end(self, pos: int, limit: int) -> Optional[int]:
        """Index just past the ':' when pos starts a case/default label."""
        token = self.stream[pos]
        if token.kind is not TokenKind.KEYWORD:
            return None
        if token.text == "default":
            colon = self._next(pos + 1, limit)
            if colon < limit and self.stream[colon].is_punct(":"):
                return colon + 1
            return None
        if token.text != "case":
            return None

        ternaries = 0
        j = pos + 1
        while j < limit:
            current = self.stream[j]
            if current.kind in TRIVIA_KINDS:
                j += 1
                continue
            if self.scan.is_opener(j):
                j = self.scan.match(j) + 1
                continue
            if current.is_punct("?"):
                ternaries += 1
            elif current.is_punct(":"):
                if not ternaries:
                    return j + 1
                ternaries -= 1
            elif current.kind is TokenKind.PUNCTUATOR and current.text in (";", "}", ")", "]"):
                break
            j += 1
        raise MalformedInputError("'case' label is missing its ':'", token.span)

    def parse_sequence(self, start: int, limit: int) -> List[Statement]:
        statements: List[Statement] = []
        pos = self._next(start, limit)
        while pos < limit:
            statement = self.parse(pos, limit)
            statements.append(statement)
            pos = self._next(statement.end, limit)
        return statements

    def parse_block(self, statement: Statement) -> List[Statement]:
        """Top-level statements of a compound statement."""
        close = self.scan.match(statement.start)
        return self.parse_sequence(statement.start + 1, close)

    def parse(self, pos: int, limit: int) -> Statement:
        if pos >= limit:
            return Statement(StatementKind.EMPTY, pos, pos, complete=False)

        token = self.stream[pos]
        if token.kind is TokenKind.ATTR_OPEN:
            return self._parse_attributed(pos, limit)
        if token.is_punct(";"):
            return Statement(StatementKind.EMPTY, pos, pos + 1)
        if token.is_punct("{"):
            return Statement(StatementKind.COMPOUND, pos, self.scan.match(pos) + 1)

        if token.kind is TokenKind.KEYWORD:
            if token.text in ("case", "default"):
                label_end = self.case_label_end(pos, limit)
                if label_end is not None:
                    return self._parse_labeled(pos, label_end, limit, keyword=token.text)
            if token.text == "if":
                return self._parse_if(pos, limit)
            if token.text in ("switch", "while", "for"):
                kind = StatementKind.SELECTION if token.text == "switch" else StatementKind.ITERATION
                return self._parse_headed(pos, limit, kind)
            if token.text == "do":
                return self._parse_do(pos, limit)
            if token.text == "try":
                return self._parse_try(pos, limit)
            if token.text in _JUMP_KEYWORDS:
                return self._parse_simple(pos, limit, StatementKind.JUMP, keyword=token.text)

        if token.kind is TokenKind.IDENTIFIER:
            colon = self._next(pos + 1, limit)
            if colon < limit and self.stream[colon].is_punct(":"):
                return self._parse_labeled(pos, colon + 1, limit)

        return self._parse_simple(pos, limit, StatementKind.EXPRESSION)

    def _parse_attributed(self, pos: int, limit: int) -> Statement:
        attributes: List[int] = []
        j = pos
        while j < limit and self.stream[j].kind is TokenKind.ATTR_OPEN:
            attributes.append(j)
            j = self._next(self.scan.match(j) + 1, limit)
        if j >= limit:
            end = self.scan.match(attributes[-1]) + 1
            return Statement(StatementKind.ATTRIBUTED, pos, end, attributes=attributes, complete=False)
        inner = self.parse(j, limit)
        return Statement(
            StatementKind.ATTRIBUTED, pos, inner.end,
            inner=inner, attributes=attributes, complete=inner.complete,
        )

    def _parse_labeled(self, pos: int, label_end: int, limit: int, keyword: Optional[str] = None) -> Statement:
        body = self._next(label_end, limit)
        if body >= limit:
            return Statement(StatementKind.LABELED, pos, label_end, keyword=keyword)
        inner = self.parse(body, limit)
        return Statement(
            StatementKind.LABELED, pos, inner.end,
            keyword=keyword, inner=inner, complete=inner.complete,
        )

    def _parse_if(self, pos: int, limit: int) -> Statement:
        j = self._next(pos + 1, limit)
        if self._is(j, limit, "constexpr"):
            j = self._next(j + 1, limit)
        if self._is(j, limit, "!"):
            j = self._next(j + 1, limit)
        if self._is(j, limit, "consteval"):
            body = self._next(j + 1, limit)
        elif self._is(j, limit, "("):
            body = self._next(self.scan.match(j) + 1, limit)
        else:
            return self._parse_simple(pos, limit, StatementKind.EXPRESSION)

        then_branch = self.parse(body, limit)
        end = then_branch.end
        complete = then_branch.complete
        other = self._next(then_branch.end, limit)
        if other < limit and self.stream[other].is_keyword("else"):
            else_branch = self.parse(self._next(other + 1, limit), limit)
            end = else_branch.end
            complete = complete and else_branch.complete
        return Statement(StatementKind.SELECTION, pos, end, keyword="if", complete=complete)

    def _parse_headed(self, pos: int, limit: int, kind: StatementKind) -> Statement:
        header = self._next(pos + 1, limit)
        if not self._is(header, limit, "("):
            return self._parse_simple(pos, limit, StatementKind.EXPRESSION)
        body = self.parse(self._next(self.scan.match(header) + 1, limit), limit)
        return Statement(kind, pos, body.end, keyword=self.stream[pos].text, complete=body.complete)

    def _parse_do(self, pos: int, limit: int) -> Statement:
        body = self.parse(self._next(pos + 1, limit), limit)
        loop = self._next(body.end, limit)
        if loop >= limit or not self.stream[loop].is_keyword("while"):
            return Statement(StatementKind.ITERATION, pos, body.end, keyword="do", complete=False)
        tail = self._parse_simple(loop, limit, StatementKind.ITERATION)
        return Statement(
            StatementKind.ITERATION, pos, tail.end,
            keyword="do", complete=body.complete and tail.complete,
        )

    def _parse_try(self, pos: int, limit: int) -> Statement:
        block = self._next(pos + 1, limit)
        if not self._is(block, limit, "{"):
            return self._parse_simple(pos, limit, StatementKind.EXPRESSION)
        end = self.scan.match(block) + 1
        while True:
            handler = self._next(end, limit)
            if handler >= limit or not self.stream[handler].is_keyword("catch"):
                break
            header = self._next(handler + 1, limit)
            if not self._is(header, limit, "("):
                break
            handler_block = self._next(self.scan.match(header) + 1, limit)
            if not self._is(handler_block, limit, "{"):
                break
            end = self.scan.match(handler_block) + 1
        return Statement(StatementKind.TRY, pos, end, keyword="try")

    def starts_label(self, index: int, limit: int) -> bool:
        token = self.stream[index]
        if token.is_keyword("case"):
            return True
        if token.is_keyword("default"):
            return self._is(self._next(index + 1, limit), limit, ":")
        return False

    def _parse_simple(self, pos: int, limit: int, kind: StatementKind, keyword: Optional[str] = None) -> Statement:
        last = pos
        j = pos
        while j < limit:
            token = self.stream[j]
            if token.kind in TRIVIA_KINDS:
                j += 1
                continue
            if token.is_punct(";"):
                return Statement(kind, pos, j + 1, keyword=keyword)
            if self.scan.is_opener(j):
                last = self.scan.match(j)
                j = last + 1
                continue
            if self.scan.is_closer(j):
                break
            if j > pos and self.starts_label(j, limit):
                break
            last = j
            j += 1
        return Statement(kind, pos, last + 1, keyword=keyword, complete=False)


# ============================================================
# ================ DIRECTIVES & SWITCH REGIONS ===============
# ============================================================

class FallthroughMode(Enum):
    ENABLED = "enabled"    # ordinary C++ fallthrough (fall_through(true) or no directive)
    DISABLED = "disabled"  # fall_through(false): implicit break between cases


class DirectivePlacement(Enum):
    STATEMENT = "statement"        # after ';', '{', '}' or at start of input
    LABELED = "labeled"            # right after a label colon
    CONTROL_BODY = "control-body"  # sole body of if/while/for/else/do


@dataclass
class DirectiveMark:
    position: int     # index of the directive identifier
    semicolon: int    # index of its terminating ';'
    enabled: bool
    placement: DirectivePlacement = DirectivePlacement.STATEMENT
    location: Optional[SourceRange] = None
    region: Optional[int] = None
    keep_semicolon: bool = False
    valid: bool = True  # argument is a bare true or false

    @property
    def end(self) -> int:
        return self.semicolon + 1


class DirectivePhase(Enum):
    NONE = "none"
    PENDING = "pending"
    BOUND = "bound"


@dataclass(frozen=True)
class DirectiveState:
    """
    NONE --directive--> PENDING(enabled) --switch--> BOUND(region)
    --body closes--> NONE. Anything else seen while PENDING goes back to NONE.
    """
    phase: DirectivePhase = DirectivePhase.NONE
    mark: Optional[DirectiveMark] = None
    region: Optional[int] = None

    def pending(self, mark: DirectiveMark) -> "DirectiveState":
        return DirectiveState(DirectivePhase.PENDING, mark, None)

    def bind(self, region: int) -> "DirectiveState":
        return DirectiveState(DirectivePhase.BOUND, self.mark, region)

    def reset(self) -> "DirectiveState":
        return DirectiveState()


class TerminatorKind(Enum):
    BREAK = "break"
    RETURN = "return"
    GOTO = "goto"
    CONTINUE = "continue"
    THROW = "throw"
    NORETURN_CALL = "noreturn-call"


@dataclass
class CaseSegment:
    labels: List[Tuple[int, int]] = field(default_factory=list)  # [start, end) per label
    statements: List[Statement] = field(default_factory=list)
    terminated: bool = False
    terminator: Optional[TerminatorKind] = None
    has_fallthrough_attr: bool = False
    is_last: bool = False

    @property
    def label_span(self) -> Tuple[int, int]:
        return self.labels[0][0], self.labels[-1][1]

    @property
    def statement_span(self) -> Tuple[int, int]:
        if not self.statements:
            end = self.labels[-1][1]
            return end, end
        return self.statements[0].start, self.statements[-1].end


@dataclass
class SwitchRegion:
    index: int
    keyword: int                   # index of 'switch'
    header_span: Tuple[int, int]   # '(' and ')' indices
    body_span: Tuple[int, int]     # '{' and '}' indices, or first/last body token
    compound: bool = True
    parent: Optional[int] = None
    mode: FallthroughMode = FallthroughMode.ENABLED
    directive: Optional[DirectiveMark] = None
    cases: List[CaseSegment] = field(default_factory=list)
    preamble: List[Statement] = field(default_factory=list)
    nested_labels: List[int] = field(default_factory=list)
    location: Optional[SourceRange] = None

    @property
    def governed(self) -> bool:
        return self.mode is FallthroughMode.DISABLED


_CONDITIONAL_PP_RE = re.compile(r"#\s*(?:if|ifdef|ifndef|elif|elifdef|elifndef|else|endif)\b")
_ACCESS_SPECIFIERS = frozenset({"public", "private", "protected"})
_CONTROL_KEYWORDS = frozenset({"if", "while", "for", "switch", "constexpr"})


class SwitchRegionExtractor:
    """
    Finds `fall_through(<bool>);` directives and every switch statement,
    binds each directive to the switch that immediately follows it, and
    partitions switch bodies into case segments. Switch regions live in an
    arena (self.regions) and refer to their parent by index.
    """

    def __init__(self, stream: TokenStream, scan: StructuralScan, config: "FallguardConfig") -> None:
        self.stream = stream
        self.scan = scan
        self.config = config
        self.parser = StatementParser(stream, scan)
        self.regions: List[SwitchRegion] = []
        self.directives: List[DirectiveMark] = []
        self.diagnostics: List[Diagnostic] = []

    # ---------------- walk ----------------

    def extract(self) -> List[SwitchRegion]:
        stream = self.stream
        count = len(stream)
        state = DirectiveState()
        open_regions: List[int] = []

        i = stream.next_significant(0)
        while i < count:
            while open_regions and i > self.regions[open_regions[-1]].body_span[1]:
                open_regions.pop()
            if state.phase is DirectivePhase.BOUND and i > self.regions[state.region].body_span[1]:
                state = state.reset()

            token = stream[i]
            if state.phase is DirectivePhase.PENDING and not token.is_keyword("switch"):
                self._report_misplaced(state.mark, f"the next statement starts with '{token.text}'")
                state = state.reset()

            if token.is_keyword("switch"):
                region = self._register_switch(i, open_regions[-1] if open_regions else None)
                if state.phase is DirectivePhase.PENDING:
                    region.directive = state.mark
                    region.mode = FallthroughMode.ENABLED if state.mark.enabled else FallthroughMode.DISABLED
                    state.mark.region = region.index
                    state = state.bind(region.index)
                if region.compound:
                    open_regions.append(region.index)
                i = stream.next_significant(i + 1)
                continue

            mark = self._match_directive(i)
            if mark is not None:
                self.directives.append(mark)
                following = stream.next_significant(mark.end)
                if not mark.valid:
                    # reported by _match_directive; deleted, never binds
                    pass
                elif mark.placement is DirectivePlacement.CONTROL_BODY:
                    self._report_misplaced(mark, "it is the body of a control statement")
                elif self._crosses_conditional(mark.end, following):
                    self._report_misplaced(mark, "a conditional preprocessor directive separates it from the next statement")
                else:
                    state = state.pending(mark)
                i = following
                continue

            i = stream.next_significant(i + 1)

        if state.phase is DirectivePhase.PENDING:
            self._report_misplaced(state.mark, "it is at the end of the input")

        for region in self.regions:
            self._partition(region)
        self._find_nested_labels()
        return self.regions

    def _report_misplaced(self, mark: DirectiveMark, reason: str) -> None:
        argument = "true" if mark.enabled else "false"
        self.diagnostics.append(Diagnostic(
            kind=MISPLACED_DIRECTIVE,
            severity="error",
            message=(
                f"'{self.config.directive_spelling}({argument})' is not immediately followed by a "
                f"switch statement ({reason}); it has no effect"
            ),
            location=mark.location,
        ))

    def _crosses_conditional(self, start: int, stop: int) -> bool:
        for index in range(start, stop):
            token = self.stream[index]
            if token.kind is TokenKind.PREPROCESSOR and _CONDITIONAL_PP_RE.match(token.text):
                return True
        return False

    # ---------------- directives ----------------

    def _match_directive(self, index: int) -> Optional[DirectiveMark]:
        stream = self.stream
        token = stream[index]
        if token.kind is not TokenKind.IDENTIFIER or token.text != self.config.directive_spelling:
            return None
        lparen = stream.next_significant(index + 1)
        if lparen >= len(stream) or not stream[lparen].is_punct("("):
            return None
        placement = self._directive_placement(index)
        if placement is None:
            return None
        rparen = self.scan.match(lparen)
        semicolon = stream.next_significant(rparen + 1)
        if semicolon >= len(stream) or not stream[semicolon].is_punct(";"):
            return None

        arguments = stream.significant_indices(lparen + 1, rparen)
        valid = len(arguments) == 1 and stream[arguments[0]].text in ("true", "false")
        if not valid:
            self.diagnostics.append(Diagnostic(
                kind=INVALID_DIRECTIVE_ARGUMENT,
                severity="error",
                message=(
                    f"'{stream.text(index, semicolon + 1)}' does not take a bare 'true' or 'false'; "
                    "removed without effect"
                ),
                location=token.span,
            ))

        following = stream.next_significant(semicolon + 1)
        keep_semicolon = placement is DirectivePlacement.CONTROL_BODY or (
            placement is DirectivePlacement.LABELED
            and following < len(stream)
            and stream[following].is_punct("}")
        )
        return DirectiveMark(
            position=index,
            semicolon=semicolon,
            enabled=valid and stream[arguments[0]].text == "true",
            placement=placement,
            location=stream.span(index, semicolon + 1),
            keep_semicolon=keep_semicolon,
            valid=valid,
        )

    def _directive_placement(self, index: int) -> Optional[DirectivePlacement]:
        stream = self.stream
        prev = stream.prev_significant(index)
        if prev is None:
            return DirectivePlacement.STATEMENT
        token = stream[prev]
        if token.kind is TokenKind.PUNCTUATOR and token.text in (";", "{", "}"):
            return DirectivePlacement.STATEMENT
        if token.is_punct(":") and self._colon_ends_label(prev):
            return DirectivePlacement.LABELED
        if token.is_keyword("else") or token.is_keyword("do"):
            return DirectivePlacement.CONTROL_BODY
        if token.is_punct(")"):
            keyword = stream.prev_significant(self.scan.match(prev))
            if keyword is not None and stream[keyword].kind is TokenKind.KEYWORD and stream[keyword].text in _CONTROL_KEYWORDS:
                return DirectivePlacement.CONTROL_BODY
        return None

    def _colon_ends_label(self, colon: int) -> bool:
        stream = self.stream
        collected: List[Token] = []
        j = stream.prev_significant(colon)
        while j is not None:
            token = stream[j]
            if token.kind is TokenKind.PUNCTUATOR and token.text in (";", "{", "}", ":"):
                break
            if self.scan.is_closer(j):
                j = self.scan.match(j)
            collected.append(stream[j])
            j = stream.prev_significant(j)
        collected.reverse()
        if not collected:
            return False
        first = collected[0]
        if first.is_keyword("case"):
            return True
        if len(collected) != 1:
            return False
        return (
            first.kind is TokenKind.IDENTIFIER
            or first.is_keyword("default")
            or (first.kind is TokenKind.KEYWORD and first.text in _ACCESS_SPECIFIERS)
        )

    # ---------------- switch regions ----------------

    def _register_switch(self, keyword: int, parent: Optional[int]) -> SwitchRegion:
        stream = self.stream
        count = len(stream)
        lparen = stream.next_significant(keyword + 1)
        if lparen >= count:
            raise UnterminatedSwitchBodyError("switch statement at the end of input has no body", stream[keyword].span)
        if not stream[lparen].is_punct("("):
            raise MalformedInputError("expected '(' after 'switch'", stream[lparen].span)
        rparen = self.scan.match(lparen)
        body = stream.next_significant(rparen + 1)
        if body >= count:
            raise UnterminatedSwitchBodyError("switch statement at the end of input has no body", stream[keyword].span)

        if stream[body].is_punct("{"):
            body_span = (body, self.scan.match(body))
            compound = True
        else:
            statement = self.parser.parse(body, count)
            body_span = (body, statement.end - 1)
            compound = False

        region = SwitchRegion(
            index=len(self.regions),
            keyword=keyword,
            header_span=(lparen, rparen),
            body_span=body_span,
            compound=compound,
            parent=parent,
            location=stream.span(keyword, rparen + 1),
        )
        self.regions.append(region)
        return region

    def _partition(self, region: SwitchRegion) -> None:
        if not region.compound:
            if region.governed:
                self.diagnostics.append(Diagnostic(
                    kind=UNGOVERNABLE_SWITCH_BODY,
                    severity="warning",
                    message="switch body is not a compound statement; no break can be injected",
                    location=region.location,
                ))
            return

        stream = self.stream
        open_brace, close_brace = region.body_span
        current: Optional[CaseSegment] = None
        directives = {mark.position for mark in self.directives}
        pos = stream.next_significant(open_brace + 1, close_brace)
        while pos < close_brace:
            label_end = self.parser.case_label_end(pos, close_brace)
            if label_end is not None:
                if current is not None and not current.statements:
                    current.labels.append((pos, label_end))
                else:
                    current = CaseSegment(labels=[(pos, label_end)])
                    region.cases.append(current)
                pos = stream.next_significant(label_end, close_brace)
                continue

            statement = self.parser.parse(pos, close_brace)
            if statement.start in directives:
                # deleted on output, so it neither ends nor separates a segment
                pos = stream.next_significant(statement.end, close_brace)
                continue
            if not statement.complete:
                self.diagnostics.append(Diagnostic(
                    kind=UNTERMINATED_STATEMENT,
                    severity="warning",
                    message=f"statement '{_abbreviate(stream.text(statement.start, statement.end))}' is not terminated by ';'",
                    location=stream.span(statement.start, statement.end),
                ))
            if current is None:
                region.preamble.append(statement)
            else:
                current.statements.append(statement)
            pos = stream.next_significant(statement.end, close_brace)

        if region.cases:
            region.cases[-1].is_last = True

    def _find_nested_labels(self) -> None:
        stream = self.stream
        compound = [region for region in self.regions if region.compound]
        top_level: Set[int] = {
            start for region in compound for segment in region.cases for start, _ in segment.labels
        }
        for index, token in enumerate(stream.tokens):
            if token.kind is not TokenKind.KEYWORD or token.text not in ("case", "default"):
                continue
            if index in top_level or not self.parser.starts_label(index, len(stream)):
                continue
            owners = [r for r in self.regions if r.body_span[0] <= index <= r.body_span[1]]
            if not owners:
                continue
            owner = max(owners, key=lambda r: r.body_span[0])
            if owner.compound:
                owner.nested_labels.append(index)

        for region in compound:
            if region.governed and region.nested_labels:
                self.diagnostics.append(Diagnostic(
                    kind=NESTED_CASE_LABEL,
                    severity="warning",
                    message=(
                        "case label nested inside another statement of a governed switch; "
                        "only top-level case segments receive an implicit break"
                    ),
                    location=stream[region.nested_labels[0]].span,
                ))


def _abbreviate(text: str, width: int = 40) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


# ============================================================
# ================= TERMINATOR CLASSIFIER ====================
# ============================================================

DEFAULT_NORETURN_FUNCTIONS = [
    "abort",
    "exit",
    "_Exit",
    "quick_exit",
    "terminate",
    "longjmp",
    "unreachable",
    "__builtin_unreachable",
    "__builtin_trap",
]

_NORETURN_ATTRIBUTES = frozenset({"noreturn", "gnu::noreturn", "__noreturn__", "gnu::__noreturn__"})
_DECLARATION_GROUPS = frozenset({"__attribute__", "__declspec", "alignas", "_Alignas", "decltype", "noexcept", "throw"})


def _normalize_function_name(name: str) -> str:
    name = "".join(name.split())
    if name.startswith("::"):
        name = name[2:]
    if name.startswith("std::"):
        name = name[5:]
    return name


def _attribute_items(stream: TokenStream, scan: StructuralScan, open_index: int) -> List[str]:
    """Attribute names inside one `[[ ... ]]`, arguments stripped."""
    close = scan.match(open_index)
    items: List[str] = []
    current: List[str] = []
    depth = 0
    for index in stream.significant_indices(open_index + 1, close):
        text = stream[index].text
        if text in ("(", "[", "{"):
            depth += 1
        elif text in (")", "]", "}"):
            depth -= 1
        elif text == "," and depth == 0:
            items.append("".join(current))
            current = []
            continue
        current.append(text)
    items.append("".join(current))
    return [item.split("(")[0] for item in items if item]


def _qualified_name_before(stream: TokenStream, index: int) -> Optional[str]:
    parts: List[str] = []
    j = stream.prev_significant(index)
    while j is not None and stream[j].kind is TokenKind.IDENTIFIER:
        parts.insert(0, stream[j].text)
        separator = stream.prev_significant(j)
        if separator is None or not stream[separator].is_punct("::"):
            break
        j = stream.prev_significant(separator)
    return "::".join(parts) or None


def _declaration_start(stream: TokenStream, scan: StructuralScan, index: int) -> int:
    j = stream.prev_significant(index)
    while j is not None:
        token = stream[j]
        if token.kind is TokenKind.PUNCTUATOR and token.text in (";", "{", "}"):
            return j + 1
        if scan.is_closer(j):
            j = scan.match(j)
        j = stream.prev_significant(j)
    return 0


def _declared_function_name(stream: TokenStream, scan: StructuralScan, start: int) -> Optional[str]:
    k = start
    count = len(stream)
    while k < count:
        token = stream[k]
        if token.kind in TRIVIA_KINDS:
            k += 1
            continue
        if token.kind is TokenKind.PUNCTUATOR and token.text in (";", "{", "="):
            return None
        if token.kind is TokenKind.ATTR_OPEN or token.is_punct("["):
            k = scan.match(k) + 1
            continue
        if token.text in _DECLARATION_GROUPS:
            group = stream.next_significant(k + 1)
            if group < count and stream[group].is_punct("("):
                k = scan.match(group) + 1
            else:
                k += 1
            continue
        if token.is_punct("("):
            return _qualified_name_before(stream, k)
        k += 1
    return None


def _is_noreturn_specifier(stream: TokenStream, scan: StructuralScan, index: int) -> bool:
    token = stream[index]
    if token.kind is TokenKind.ATTR_OPEN:
        return bool(_NORETURN_ATTRIBUTES.intersection(_attribute_items(stream, scan, index)))
    if token.kind is TokenKind.IDENTIFIER and token.text in ("__attribute__", "__declspec"):
        group = stream.next_significant(index + 1)
        if group >= len(stream) or not stream[group].is_punct("("):
            return False
        words = {stream[k].text for k in stream.significant_indices(group, scan.match(group))}
        return bool(words & {"noreturn", "__noreturn__"})
    return token.is_keyword("_Noreturn")


def _declares_noreturn(stream: TokenStream, scan: StructuralScan, start: int) -> bool:
    k = start
    count = len(stream)
    while k < count:
        token = stream[k]
        if token.kind in TRIVIA_KINDS:
            k += 1
            continue
        if token.kind is TokenKind.PUNCTUATOR and token.text in (";", "{", "}"):
            return False
        if _is_noreturn_specifier(stream, scan, k):
            return True
        k = scan.match(k) + 1 if scan.is_opener(k) else k + 1
    return False


_CLASS_KEYS = frozenset({"class", "struct", "union"})

Scope = Tuple[str, ...]


def _scope_opened_by(stream: TokenStream, scan: StructuralScan, brace: int, outer: Optional[Scope]) -> Optional[Scope]:
    """
    Scope entered at the `{` at `brace`. A named namespace or class appends
    its name to `outer`; an anonymous namespace, an unnamed class or an
    `extern "C"` block keeps `outer`. Function bodies, initializers and enum
    bodies give None: nothing declared there is callable by name from a case.
    """
    if outer is None:
        return None
    head: List[int] = []
    k = _declaration_start(stream, scan, brace)
    while k < brace:
        token = stream[k]
        if token.kind in TRIVIA_KINDS:
            k += 1
            continue
        if token.kind is TokenKind.ATTR_OPEN:
            k = scan.match(k) + 1
            continue
        if token.text in _DECLARATION_GROUPS:
            group = stream.next_significant(k + 1)
            if group < brace and stream[group].is_punct("("):
                k = scan.match(group) + 1
                continue
        if token.is_punct("(") or token.is_punct("="):
            return None
        head.append(k)
        k += 1

    if head and stream[head[0]].is_keyword("template"):
        depth = 0
        for position, index in enumerate(head):
            text = stream[index].text
            if text == "<":
                depth += 1
            elif text in (">", ">>"):
                depth -= len(text)
                if depth <= 0:
                    head = head[position + 1:]
                    break

    keyword = next(
        (i for i in head if stream[i].text in _CLASS_KEYS or stream[i].text in ("namespace", "enum")),
        None,
    )
    if keyword is None:
        return outer if head and stream[head[0]].is_keyword("extern") else None
    if stream[keyword].text == "enum":
        return None

    parts: List[str] = []
    expect_name = True
    for index in head[head.index(keyword) + 1:]:
        token = stream[index]
        if expect_name and token.kind is TokenKind.IDENTIFIER:
            parts.append(token.text)
            expect_name = False
        elif not expect_name and token.is_punct("::"):
            expect_name = True
        elif not (expect_name and token.is_keyword("inline")):
            break
    return outer + tuple(parts)


def _declaration_scopes(stream: TokenStream, scan: StructuralScan) -> List[Optional[Scope]]:
    """Enclosing namespace and class names for every token, None inside other braces."""
    scopes: List[Optional[Scope]] = []
    enclosing: List[Optional[Scope]] = []
    current: Optional[Scope] = ()
    for index, token in enumerate(stream.tokens):
        if token.is_punct("}"):
            current = enclosing.pop()
        scopes.append(current)
        if token.is_punct("{"):
            enclosing.append(current)
            current = _scope_opened_by(stream, scan, index, current)
    return scopes


def _names_match(written: str, declared: str) -> bool:
    return declared == written or declared.endswith("::" + written)


@dataclass
class FunctionDeclarations:
    """
    Functions declared at namespace or class scope of one translation unit,
    each name qualified with its enclosing namespaces and classes.
    """
    noreturn: Set[str] = field(default_factory=set)
    ordinary: Set[str] = field(default_factory=set)

    def is_noreturn(self, name: str, rooted: bool = False) -> bool:
        """
        True when `name`, as written at a call site, can only mean a function
        declared noreturn. An unqualified or partly qualified name must pick
        out exactly one noreturn declaration, and no ordinary declaration
        (an overload, or the same name in another scope) may match it too.
        A `rooted` name (written with a leading `::`) must match exactly.
        """
        if rooted:
            return name in self.noreturn and name not in self.ordinary
        if len([n for n in self.noreturn if _names_match(name, n)]) != 1:
            return False
        return not any(_names_match(name, n) for n in self.ordinary)


def collect_function_declarations(stream: TokenStream, scan: StructuralScan) -> FunctionDeclarations:
    """
    Sort every function declared at namespace or class scope into noreturn
    (`[[noreturn]]`, `_Noreturn`, `__attribute__((noreturn))`,
    `__declspec(noreturn)`) and ordinary declarations. Definitions count as
    declarations.
    """
    declarations = FunctionDeclarations()
    scopes = _declaration_scopes(stream, scan)
    seen: Set[int] = set()
    for index, token in enumerate(stream.tokens):
        if not token.is_punct("(") or scopes[index] is None:
            continue
        start = _declaration_start(stream, scan, index)
        if start in seen:
            continue
        seen.add(start)
        name = _declared_function_name(stream, scan, start)
        if not name:
            continue
        qualified = _normalize_function_name("::".join(scopes[index] + (name,)))
        if _declares_noreturn(stream, scan, start):
            declarations.noreturn.add(qualified)
        else:
            declarations.ordinary.add(qualified)
    return declarations


def collect_noreturn_functions(stream: TokenStream, scan: StructuralScan) -> Set[str]:
    """Qualified names of the functions declared noreturn in the translation unit."""
    return collect_function_declarations(stream, scan).noreturn


_JUMP_TERMINATORS: Dict[str, TerminatorKind] = {
    "break": TerminatorKind.BREAK,
    "return": TerminatorKind.RETURN,
    "co_return": TerminatorKind.RETURN,
    "goto": TerminatorKind.GOTO,
    "continue": TerminatorKind.CONTINUE,
    "throw": TerminatorKind.THROW,
}


class TerminatorClassifier:
    """
    Decides, for each case segment, whether its last top-level statement
    already transfers control out of the segment, and whether it is an
    intentional-fallthrough marker.
    """

    def __init__(
        self,
        stream: TokenStream,
        scan: StructuralScan,
        config: "FallguardConfig",
        declarations: Optional[FunctionDeclarations] = None,
        directives: Optional[Set[int]] = None,
    ) -> None:
        self.stream = stream
        self.scan = scan
        self.config = config
        self.parser = StatementParser(stream, scan)
        self.noreturn_functions = {_normalize_function_name(n) for n in config.noreturn_functions}
        self.declarations = declarations or FunctionDeclarations()
        self.directives = directives or set()
        self.fallthrough_macros = set(config.fallthrough_macros)

    def classify_region(self, region: SwitchRegion) -> None:
        for segment in region.cases:
            self.classify_segment(segment)

    def classify_segment(self, segment: CaseSegment) -> None:
        last = segment.statements[-1] if segment.statements else None
        segment.terminator = self.classify_terminator(last) if last is not None else None
        segment.terminated = segment.terminator is not None
        segment.has_fallthrough_attr = last is not None and self.is_fallthrough_marker(last)

    def classify_terminator(self, statement: Statement, unwrap: bool = True) -> Optional[TerminatorKind]:
        kind = statement.kind
        if kind is StatementKind.JUMP:
            return _JUMP_TERMINATORS[statement.keyword] if statement.complete else None
        if kind is StatementKind.ATTRIBUTED or kind is StatementKind.LABELED:
            return self.classify_terminator(statement.inner, unwrap) if statement.inner else None
        if kind is StatementKind.COMPOUND:
            if not unwrap:
                return None
            inner = [s for s in self.parser.parse_block(statement) if s.start not in self.directives]
            return self.classify_terminator(inner[-1], unwrap=False) if inner else None
        if kind is StatementKind.EXPRESSION:
            return TerminatorKind.NORETURN_CALL if self._is_noreturn_call(statement) else None
        if kind in (StatementKind.EMPTY, StatementKind.SELECTION, StatementKind.ITERATION, StatementKind.TRY):
            return None
        raise ValueError(f"unhandled statement kind {kind!r}")

    def _is_noreturn_call(self, statement: Statement) -> bool:
        if not statement.complete:
            return False
        stream = self.stream
        indices = stream.significant_indices(statement.start, statement.end)
        texts = [stream[i].text for i in indices]
        if len(indices) < 4 or texts[-1] != ";":
            return False

        j = 1 if texts[0] == "::" else 0
        parts: List[str] = []
        while j < len(indices) and stream[indices[j]].kind is TokenKind.IDENTIFIER:
            parts.append(texts[j])
            j += 1
            if j < len(indices) and texts[j] == "::":
                j += 1
                continue
            break
        if not parts or j >= len(indices) or texts[j] != "(":
            return False
        close = self.scan.match(indices[j])
        if len(stream.significant_indices(close + 1, statement.end)) != 1:
            return False

        name = _normalize_function_name("::".join(parts))
        return name in self.noreturn_functions or self.declarations.is_noreturn(name, rooted=texts[0] == "::")

    def is_fallthrough_marker(self, statement: Statement) -> bool:
        stream = self.stream
        if statement.kind is StatementKind.ATTRIBUTED:
            if statement.inner is None or statement.inner.kind is not StatementKind.EMPTY or not statement.inner.complete:
                return False
            spelling = "".join(self.config.attribute_spelling.split())
            return any(spelling in _attribute_items(stream, self.scan, a) for a in statement.attributes)

        if statement.kind is not StatementKind.EXPRESSION:
            return False
        texts = [stream[i].text for i in stream.significant_indices(statement.start, statement.end)]
        if texts and texts[-1] == ";":
            texts = texts[:-1]
        if texts in (
            ["__attribute__", "(", "(", "fallthrough", ")", ")"],
            ["__attribute__", "(", "(", "__fallthrough__", ")", ")"],
        ):
            return True
        if texts and texts[0] in self.fallthrough_macros:
            return texts[1:] in ([], ["(", ")"])
        return False


# ============================================================
# =================== REWRITER / EMITTER =====================
# ============================================================

@dataclass
class Injection:
    region: int
    segment: int
    token_index: int          # the break is inserted before this token
    text: str
    labels: str               # labels of the segment that would fall through
    location: Optional[SourceRange] = None

    def to_json_obj(self) -> Dict[str, Any]:
        return {
            "labels": self.labels,
            "text": self.text,
            "location": self.location.to_json_obj() if self.location else None,
        }


class Rewriter:
    """
    Copies the token stream verbatim except for two kinds of edits:
    directive deletion and `break;` insertion before the next case label.
    """

    def __init__(self, stream: TokenStream) -> None:
        self.stream = stream
        self.deleted: Set[int] = set()
        self.insertions: Dict[int, str] = {}
        self.injections: List[Injection] = []

    def plan(self, regions: List[SwitchRegion], directives: List[DirectiveMark]) -> None:
        for mark in directives:
            self._plan_deletion(mark)
        for region in regions:
            if region.governed and region.compound:
                self._plan_injections(region)

    def _plan_deletion(self, mark: DirectiveMark) -> None:
        if mark.keep_semicolon:
            self.deleted.update(range(mark.position, mark.semicolon))
            return
        end = mark.end
        if end < len(self.stream) and self.stream[end].kind is TokenKind.WHITESPACE:
            end += 1
        self.deleted.update(range(mark.position, end))

    def _plan_injections(self, region: SwitchRegion) -> None:
        for number, segment in enumerate(region.cases):
            if segment.is_last or segment.terminated or segment.has_fallthrough_attr:
                continue
            following = region.cases[number + 1]
            label = following.labels[0][0]
            text = self._injection_text(label)
            self.insertions[label] = text
            self.injections.append(Injection(
                region=region.index,
                segment=number,
                token_index=label,
                text=text,
                labels=self._label_text(segment),
                location=self.stream.span(*segment.label_span),
            ))

    def _injection_text(self, label: int) -> str:
        if label > 0:
            before = self.stream[label - 1]
            if before.kind is TokenKind.WHITESPACE and "\n" in before.text:
                newline = "\r\n" if "\r\n" in before.text else "\n"
                indent = before.text.rsplit("\n", 1)[1]
                return "break;" + newline + indent
        return "break; "

    def _label_text(self, segment: CaseSegment) -> str:
        return " ".join(" ".join(self.stream.text(start, end).split()) for start, end in segment.labels)

    def emit(self) -> str:
        pieces: List[str] = []
        for index, token in enumerate(self.stream.tokens):
            inserted = self.insertions.get(index)
            if inserted:
                pieces.append(inserted)
            if index in self.deleted:
                continue
            pieces.append(token.text)
        return "".join(pieces)


# ============================================================
# ===================== CONFIGURATION ========================
# ============================================================

@dataclass
class FallguardConfig:
    directive_spelling: str = "fall_through"
    attribute_spelling: str = "fallthrough"
    noreturn_functions: List[str] = field(default_factory=lambda: list(DEFAULT_NORETURN_FUNCTIONS))
    fallthrough_macros: List[str] = field(default_factory=list)
    tokenizer: Literal["builtin", "clang"] = "builtin"
    clang_args: List[str] = field(default_factory=list)


_CONFIG_KEY_ALIASES = {
    "directiveSpelling": "directive_spelling",
    "attributeSpelling": "attribute_spelling",
    "noreturnFunctions": "noreturn_functions",
    "fallthroughMacros": "fallthrough_macros",
    "clangArgs": "clang_args",
}
_IDENTIFIER_SPELLING_RE = re.compile(r"^[A-Za-z_]\w*$")
_ATTRIBUTE_SPELLING_RE = re.compile(r"^[A-Za-z_]\w*(?:::[A-Za-z_]\w*)?$")


def load_config_from_yaml(path: str) -> FallguardConfig:
    """
    Load a FallguardConfig from a YAML file. The settings may sit at the top
    level or under a `fallguard:` key; camelCase spellings are accepted.
    Unknown keys and invalid values are reported on stderr and ignored.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            doc = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in config file {path}: {exc}") from exc

    if doc is None:
        return FallguardConfig()
    if isinstance(doc, dict) and isinstance(doc.get("fallguard"), dict):
        doc = doc["fallguard"]
    if not isinstance(doc, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    def _to_str_list(key: str, value: Any) -> Optional[List[str]]:
        if value is None:
            return []
        if isinstance(value, list):
            return [str(v) for v in value if v is not None]
        sys.stderr.write(f"[fallguard] {path}: '{key}' must be a list; ignoring.\n")
        return None

    config = FallguardConfig()
    for raw_key, value in doc.items():
        key = _CONFIG_KEY_ALIASES.get(str(raw_key), str(raw_key))
        if key == "directive_spelling":
            if isinstance(value, str) and _IDENTIFIER_SPELLING_RE.match(value):
                config.directive_spelling = value
            else:
                sys.stderr.write(f"[fallguard] {path}: invalid directive spelling {value!r}; ignoring.\n")
        elif key == "attribute_spelling":
            if isinstance(value, str) and _ATTRIBUTE_SPELLING_RE.match(value):
                config.attribute_spelling = value
            else:
                sys.stderr.write(f"[fallguard] {path}: invalid attribute spelling {value!r}; ignoring.\n")
        elif key in ("noreturn_functions", "fallthrough_macros", "clang_args"):
            values = _to_str_list(key, value)
            if values is not None:
                setattr(config, key, values)
        elif key == "tokenizer":
            if value in ("builtin", "clang"):
                config.tokenizer = value
            else:
                sys.stderr.write(f"[fallguard] {path}: unknown tokenizer {value!r}; ignoring.\n")
        else:
            sys.stderr.write(f"[fallguard] {path}: unknown config key '{raw_key}'; ignoring.\n")
    return config


# ============================================================
# ======================== PIPELINE ==========================
# ============================================================

@dataclass
class TransformResult:
    path: str
    output: Optional[str]
    diagnostics: List[Diagnostic] = field(default_factory=list)
    injections: List[Injection] = field(default_factory=list)
    regions: List[SwitchRegion] = field(default_factory=list)
    fatal: Optional[Diagnostic] = None
    changed: bool = False

    @property
    def ok(self) -> bool:
        return self.fatal is None


def transform_tokens(
    tokens: List[Token],
    path: str = "<input>",
    config: Optional[FallguardConfig] = None,
) -> TransformResult:
    """
    Run Scanner, Extractor, Classifier and Rewriter over one token list.
    Fatal structural errors come back as `result.fatal` with no output.
    """
    config = config or FallguardConfig()
    stream = TokenStream(tokens, path)
    extractor: Optional[SwitchRegionExtractor] = None
    try:
        scan = StructuralScan(stream)
        extractor = SwitchRegionExtractor(stream, scan, config)
        regions = extractor.extract()
        classifier = TerminatorClassifier(
            stream,
            scan,
            config,
            collect_function_declarations(stream, scan),
            {mark.position for mark in extractor.directives},
        )
        for region in regions:
            classifier.classify_region(region)
        rewriter = Rewriter(stream)
        rewriter.plan(regions, extractor.directives)
        output = rewriter.emit()
    except FatalTransformError as exc:
        diagnostics = list(extractor.diagnostics) if extractor is not None else []
        return TransformResult(path=path, output=None, diagnostics=diagnostics, fatal=exc.to_diagnostic())

    return TransformResult(
        path=path,
        output=output,
        diagnostics=extractor.diagnostics,
        injections=rewriter.injections,
        regions=regions,
        changed=output != stream.source_text(),
    )


def transform_source(
    source: str,
    path: str = "<input>",
    config: Optional[FallguardConfig] = None,
) -> TransformResult:
    config = config or FallguardConfig()
    try:
        if config.tokenizer == "clang":
            tokens = tokenize_with_clang(source, path, config.clang_args)
        else:
            tokens = tokenize(source, path)
    except FatalTransformError as exc:
        return TransformResult(path=path, output=None, fatal=exc.to_diagnostic())
    return transform_tokens(tokens, path, config)


def transform_file(path: str, config: Optional[FallguardConfig] = None) -> TransformResult:
    try:
        with open(path, "r", encoding="utf-8", newline="") as handle:
            source = handle.read()
    except FileNotFoundError:
        sys.stderr.write(f"[fallguard] Input file not found: {path}\n")
        return TransformResult(
            path=path, output=None,
            fatal=Diagnostic(kind=INPUT_ERROR, severity="error", message="input file not found"),
        )
    except (OSError, UnicodeDecodeError) as exc:
        sys.stderr.write(f"[fallguard] Could not read {path}: {exc}\n")
        return TransformResult(
            path=path, output=None,
            fatal=Diagnostic(kind=INPUT_ERROR, severity="error", message=f"could not read input: {exc}"),
        )
    return transform_source(source, path, config)


def transform_files(
    paths: List[str],
    config: Optional[FallguardConfig] = None,
    jobs: int = 1,
) -> List[TransformResult]:
    """
    Translation units are independent; with jobs > 1 each one is handled by a
    separate worker process. Results keep the order of `paths`.
    """
    config = config or FallguardConfig()
    if jobs <= 1 or len(paths) <= 1:
        return [transform_file(path, config) for path in paths]
    with ProcessPoolExecutor(max_workers=jobs) as pool:
        return list(pool.map(transform_file, paths, [config] * len(paths)))


# ============================================================
# ====================== JSON OUTPUT =========================
# ============================================================

def result_to_json_obj(result: TransformResult) -> Dict[str, Any]:
    return {
        "path": result.path,
        "status": "ok" if result.ok else "failed",
        "changed": result.changed,
        "fatal": result.fatal.to_json_obj() if result.fatal else None,
        "diagnostics": [d.to_json_obj() for d in result.diagnostics],
        "injections": [i.to_json_obj() for i in result.injections],
        "tool": "fallguard",
        "version": __version__,
    }


def emit_results_json(results: List[TransformResult], out: Optional[str] = None) -> None:
    """
    Serialize per-file results to JSON (list of result objects).
    """
    text = json.dumps([result_to_json_obj(r) for r in results], indent=2, sort_keys=False)
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


# ============================================================
# ============================ CLI ===========================
# ============================================================

def _report_diagnostics(result: TransformResult) -> None:
    for diagnostic in result.diagnostics:
        sys.stderr.write(diagnostic.format(result.path) + "\n")
    if result.fatal is not None:
        sys.stderr.write(result.fatal.format(result.path) + "\n")


def _output_path(out_dir: str, path: str) -> str:
    relative = os.path.relpath(path)
    if relative.startswith(os.pardir):
        relative = os.path.basename(path)
    return os.path.join(out_dir, relative)


def _write_text(path: str, text: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as handle:
        handle.write(text)


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for fallguard.
    Intended usage:
      fallguard rewrite --out-dir build/rewritten src/a.cpp src/b.cpp
      fallguard check src/*.cpp
    """
    parser = argparse.ArgumentParser(
        prog="fallguard",
        description="fallguard: rewrite fall_through(bool) directives in C++ switch statements",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", metavar="CONFIG_YAML", help="YAML configuration file.")
    common.add_argument(
        "--tokenizer",
        choices=["builtin", "clang"],
        help="Tokenizer to use (overrides the configuration file).",
    )
    common.add_argument("--jobs", type=int, default=1, help="Number of worker processes.")
    common.add_argument(
        "--diagnostics",
        metavar="OUT_JSON",
        help="Write per-file results and diagnostics to this JSON file.",
    )
    common.add_argument("files", nargs="+", help="C++ translation units to process.")

    rewrite_p = subparsers.add_parser(
        "rewrite",
        parents=[common],
        help="Strip directives and inject implicit breaks into governed switches.",
    )
    destination = rewrite_p.add_mutually_exclusive_group()
    destination.add_argument("--out-dir", metavar="DIR", help="Write rewritten files under this directory.")
    destination.add_argument("--in-place", action="store_true", help="Overwrite the input files.")

    subparsers.add_parser(
        "check",
        parents=[common],
        help="Report the cases that would receive an implicit break, without writing anything.",
    )

    args = parser.parse_args(argv)

    config = FallguardConfig()
    if args.config:
        try:
            config = load_config_from_yaml(args.config)
        except ConfigError as exc:
            sys.stderr.write(f"[fallguard] {exc}\n")
            return 2
    if args.tokenizer:
        config.tokenizer = args.tokenizer
    if config.tokenizer == "clang" and not clang_available():
        sys.stderr.write("[fallguard] clang.cindex is not available; install libclang or use --tokenizer builtin.\n")
        return 2

    results = transform_files(args.files, config, jobs=args.jobs)
    failed = False
    for result in results:
        _report_diagnostics(result)
        if not result.ok:
            failed = True
            continue
        if args.command == "check":
            for injection in result.injections:
                line = injection.location.line_start if injection.location else 0
                print("%s:%d:%s" % (result.path, line, injection.labels))
        elif args.out_dir:
            _write_text(_output_path(args.out_dir, result.path), result.output)
        elif args.in_place:
            if result.changed:
                _write_text(result.path, result.output)
        else:
            sys.stdout.write(result.output)

    if args.diagnostics:
        emit_results_json(results, out=args.diagnostics)

    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
