"""Pass/fail predicates evaluated against submitted source text.

Predicates arrive as the body of a one-argument function, e.g.::

    return code.includes('taxRate') && (code.includes('*') || code.includes('+'));

They are parsed by a small interpreter instead of being executed as code.
The language has `&&`, `||`, `!`, parentheses, `true`/`false`, and calls on
the `code` string: `includes`, `startsWith`, `endsWith` (string argument),
`match` (regex literal or string argument), optionally preceded by
`toLowerCase()`, `toUpperCase()` or `trim()`. `/re/flags.test(code)` is also
accepted. `code.search()` is not: it returns an index, and -1 for "not found"
is truthy, so it cannot be read as a yes/no check.

User patterns run on the `regex` engine with a per-match timeout; a pattern
that backtracks past it fails the predicate.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

import regex
import structlog

from .errors import VerdictEvaluationError

logger = structlog.get_logger(__name__)

MAX_PREDICATE_LENGTH = 4096
MAX_PATTERN_LENGTH = 256
REGEX_TIMEOUT_SECONDS = 0.25

Predicate = Callable[[str], bool]
_Transform = Callable[[str], str]

_TRANSFORMS: dict[str, _Transform] = {
    "toLowerCase": str.lower,
    "toUpperCase": str.upper,
    "trim": str.strip,
}
_STRING_METHODS: dict[str, Callable[[str, str], bool]] = {
    "includes": lambda text, arg: arg in text,
    "startsWith": lambda text, arg: text.startswith(arg),
    "endsWith": lambda text, arg: text.endswith(arg),
}
_REGEX_METHODS = {"match"}
_REGEX_FLAGS = {"i": regex.IGNORECASE, "m": regex.MULTILINE, "s": regex.DOTALL, "g": 0, "u": 0, "y": 0}
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0"}

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<op>&&|\|\||[!().;])
    |(?P<string>'(?:[^'\\\n]|\\.)*'|"(?:[^"\\\n]|\\.)*"|`(?:[^`\\$]|\\.)*`)
    |(?P<regex>/(?:[^/\\\n]|\\.)+/[a-z]*)
    |(?P<ident>[A-Za-z_$][A-Za-z0-9_$]*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True, slots=True)
class _Token:
    """One lexical token of a predicate.

    Example:
        ```python
        tok = _Token("ident", "code", 0)
        ```
    """

    kind: str
    text: str
    pos: int


def _tokenize(source: str) -> list[_Token]:
    """Split predicate source into tokens.

    Example:
        ```python
        tokens = _tokenize("code.includes('x')")
        ```
    """
    tokens: list[_Token] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if m is None:
            raise VerdictEvaluationError(f"Unexpected character {source[pos]!r} at {pos}")
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(), pos))
        pos = m.end()
    tokens.append(_Token("eof", "", pos))
    return tokens


def _unquote(literal: str) -> str:
    """Decode a quoted string literal.

    Example:
        ```python
        assert _unquote("'a\\\\'b'") == "a'b"
        ```
    """
    body = literal[1:-1]
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _compile_regex(literal: str) -> regex.Pattern[str]:
    """Compile a `/pattern/flags` literal.

    Example:
        ```python
        pattern = _compile_regex("/tax(Rate)?/i")
        ```
    """
    end = literal.rindex("/")
    pattern, flag_text = literal[1:end], literal[end + 1 :]
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise VerdictEvaluationError("Regex pattern is too long")
    flags = 0
    for flag in flag_text:
        if flag not in _REGEX_FLAGS:
            raise VerdictEvaluationError(f"Unsupported regex flag {flag!r}")
        flags |= _REGEX_FLAGS[flag]
    try:
        return regex.compile(pattern, flags)
    except regex.error as exc:
        raise VerdictEvaluationError(f"Invalid regex {literal}: {exc}") from exc


def _search(pattern: regex.Pattern[str], text: str) -> bool:
    """Report whether `pattern` matches anywhere in `text` within the time budget.

    Example:
        ```python
        found = _search(_compile_regex("/tax/i"), "TAX")
        ```
    """
    try:
        return pattern.search(text, timeout=REGEX_TIMEOUT_SECONDS) is not None
    except TimeoutError as exc:
        raise VerdictEvaluationError(f"Regex {pattern.pattern!r} timed out") from exc

class _Parser:
    """Recursive-descent parser turning tokens into a predicate closure.

    Example:
        ```python
        predicate = _Parser(_tokenize("return code.includes('x')")).parse_program()
        ```
    """

    def __init__(self, tokens: list[_Token]) -> None:
        """Start at the first token.

        Example:
            ```python
            parser = _Parser(_tokenize("true"))
            ```
        """
        self._tokens = tokens
        self._index = 0

    def parse_program(self) -> Predicate:
        """program := ['return'] expr [';'] EOF

        Example:
            ```python
            predicate = parser.parse_program()
            ```
        """
        if self._peek().kind == "ident" and self._peek().text == "return":
            self._advance()
        predicate = self._parse_or()
        while self._accept("op", ";"):
            pass
        self._expect("eof")
        return predicate

    def _parse_or(self) -> Predicate:
        """or := and ('||' and)*

        Example:
            ```python
            predicate = parser._parse_or()
            ```
        """
        terms = [self._parse_and()]
        while self._accept("op", "||"):
            terms.append(self._parse_and())
        if len(terms) == 1:
            return terms[0]
        return lambda code: any(term(code) for term in terms)

    def _parse_and(self) -> Predicate:
        """and := unary ('&&' unary)*

        Example:
            ```python
            predicate = parser._parse_and()
            ```
        """
        terms = [self._parse_unary()]
        while self._accept("op", "&&"):
            terms.append(self._parse_unary())
        if len(terms) == 1:
            return terms[0]
        return lambda code: all(term(code) for term in terms)

    def _parse_unary(self) -> Predicate:
        """unary := '!' unary | primary

        Example:
            ```python
            predicate = parser._parse_unary()
            ```
        """
        if self._accept("op", "!"):
            inner = self._parse_unary()
            return lambda code: not inner(code)
        return self._parse_primary()

    def _parse_primary(self) -> Predicate:
        """primary := '(' or ')' | 'true' | 'false' | code-call | regex '.test(' code ')'

        Example:
            ```python
            predicate = parser._parse_primary()
            ```
        """
        tok = self._peek()
        if self._accept("op", "("):
            inner = self._parse_or()
            self._expect("op", ")")
            return inner
        if tok.kind == "ident" and tok.text in {"true", "false"}:
            self._advance()
            value = tok.text == "true"
            return lambda code: value
        if tok.kind == "ident" and tok.text == "code":
            return self._parse_code_call()
        if tok.kind == "regex":
            self._advance()
            pattern = _compile_regex(tok.text)
            self._expect("op", ".")
            self._expect("ident", "test")
            self._expect("op", "(")
            subject = self._parse_code_value()
            self._expect("op", ")")
            return lambda code: _search(pattern, subject(code))
        raise VerdictEvaluationError(f"Unexpected {tok.text or 'end of input'!r} at {tok.pos}")

    def _parse_code_value(self) -> _Transform:
        """code-value := 'code' ('.' transform '(' ')')*

        Example:
            ```python
            subject = parser._parse_code_value()
            ```
        """
        self._expect("ident", "code")
        steps: list[_Transform] = []
        while self._peek().kind == "op" and self._peek().text == "." and self._peek(1).text in _TRANSFORMS:
            self._advance()
            steps.append(_TRANSFORMS[self._advance().text])
            self._expect("op", "(")
            self._expect("op", ")")

        def value(code: str) -> str:
            """Apply the chained transforms to the source text.

            Example:
                ```python
                text = value("Const X")
                ```
            """
            for step in steps:
                code = step(code)
            return code

        return value

    def _parse_code_call(self) -> Predicate:
        """code-call := code-value ['.' method '(' literal ')']

        A bare `code` value is true when the text is non-empty.

        Example:
            ```python
            predicate = parser._parse_code_call()
            ```
        """
        subject = self._parse_code_value()
        if not self._accept("op", "."):
            return lambda code: bool(subject(code))
        method = self._expect("ident")
        self._expect("op", "(")
        arg = self._advance()
        self._expect("op", ")")
        if method.text in _STRING_METHODS:
            if arg.kind != "string":
                raise VerdictEvaluationError(f"{method.text}() expects a string literal")
            needle = _unquote(arg.text)
            check = _STRING_METHODS[method.text]
            return lambda code: check(subject(code), needle)
        if method.text in _REGEX_METHODS:
            if arg.kind == "regex":
                pattern = _compile_regex(arg.text)
            elif arg.kind == "string":
                pattern = regex.compile(regex.escape(_unquote(arg.text)))
            else:
                raise VerdictEvaluationError(f"{method.text}() expects a regex or string literal")
            return lambda code: _search(pattern, subject(code))
        raise VerdictEvaluationError(f"Unsupported method code.{method.text}()")

    def _peek(self, offset: int = 0) -> _Token:
        """Return an upcoming token without consuming it.

        Example:
            ```python
            tok = parser._peek()
            ```
        """
        index = min(self._index + offset, len(self._tokens) - 1)
        return self._tokens[index]

    def _advance(self) -> _Token:
        """Consume and return the current token.

        Example:
            ```python
            tok = parser._advance()
            ```
        """
        tok = self._peek()
        if tok.kind != "eof":
            self._index += 1
        return tok

    def _accept(self, kind: str, text: str) -> bool:
        """Consume the current token if it matches.

        Example:
            ```python
            if parser._accept("op", "&&"):
                ...
            ```
        """
        tok = self._peek()
        if tok.kind == kind and tok.text == text:
            self._advance()
            return True
        return False

    def _expect(self, kind: str, text: str | None = None) -> _Token:
        """Consume the current token or raise.

        Example:
            ```python
            parser._expect("op", ")")
            ```
        """
        tok = self._peek()
        if tok.kind != kind or (text is not None and tok.text != text):
            wanted = text or kind
            raise VerdictEvaluationError(f"Expected {wanted!r} at {tok.pos}, found {tok.text or 'end of input'!r}")
        return self._advance()


def compile_predicate(source: str) -> Predicate:
    """Parse predicate source into a callable over the submitted source text.

    Example:
        ```python
        predicate = compile_predicate("return code.includes('taxRate')")
        assert predicate("const taxRate = 0.2")
        ```
    """
    if len(source) > MAX_PREDICATE_LENGTH:
        raise VerdictEvaluationError("Predicate is too long")
    return _Parser(_tokenize(source)).parse_program()


def evaluate_verdict(source_text: str, test_check: str | None) -> bool:
    """Decide pass/fail for the submitted source; never raises.

    A missing, malformed or failing predicate counts as a fail.

    Example:
        ```python
        passed = evaluate_verdict("const taxRate = 0.2", "return code.includes('taxRate')")
        ```
    """
    if not isinstance(test_check, str) or not test_check.strip():
        return False
    try:
        predicate = compile_predicate(test_check)
        return bool(predicate(source_text))
    except (VerdictEvaluationError, RecursionError) as exc:
        logger.warning("verdict_evaluation_failed", error=str(exc))
        return False
