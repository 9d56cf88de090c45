"""Search query compiler for mailindex.

Parses user-friendly email search queries and compiles them into a single
SQL predicate over the ``messages`` table (aliased ``m``). Full-text terms
become FTS5 MATCH subqueries; field filters become indexed lookups.
Handles validation and error reporting so users never see raw SQLite
FTS5 errors.

Supported syntax:
    (empty) or *                Every message
    invoice                     Full-text search across all fields
    meet*                       Prefix match
    "exact phrase"              Phrase match
    from:alice@example.com      Sender filter (email)
    from:alice                  Sender filter (name, uses FTS)
    to:bob@example.com          Recipient filter (email)
    to:bob                      Recipient filter (name, uses FTS)
    subject:meeting             Subject field search (FTS)
    attachment:pdf              Attachment filename search (FTS)
    tag:inbox                   Tag filter
    id:<message-id>             Message-ID filter
    thread:<thread-id>          Thread filter
    has:attachment              Messages with attachments
    before:2024-06-01           Date filter
    after:2024-01-01            Date filter
    -keyword, NOT keyword       Exclude messages matching keyword
    invoice OR receipt          Boolean OR (AND is implicit)
    (a OR b) c                  Grouping
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum, auto

from mailindex.errors import QueryCompileError


class TokenType(Enum):
    """Types of tokens in search queries."""
    WORD = auto()           # Plain word: invoice
    PHRASE = auto()         # Quoted phrase: "exact phrase"
    FILTER = auto()         # Field filter: from:alice
    AND = auto()
    OR = auto()
    NOT = auto()
    LPAREN = auto()
    RPAREN = auto()


@dataclass
class Token:
    """A single token from the search query."""
    type: TokenType
    value: str
    field: str = ""  # For FILTER tokens: from, to, subject, etc.
    negated: bool = False  # Leading '-': -spam, -from:alice


@dataclass
class ParsedQuery:
    """Result of compiling a search query.

    Attributes:
        where_sql: SQL boolean expression over ``messages m``
        params: Bound parameters for where_sql, in order
        error: Parse error message, if any
    """
    where_sql: str = "1=1"
    params: list = field(default_factory=list)
    error: str | None = None

    def matches_all(self) -> bool:
        """Return True if the query places no constraint on messages."""
        return self.where_sql == "1=1" and not self.params

    def has_error(self) -> bool:
        """Return True if there was a parse error."""
        return self.error is not None


MATCH_ALL = "1=1"

# Canonical filter names, with their accepted aliases
FILTER_ALIASES = {
    'from': 'from',
    'sender': 'from',
    'to': 'to',
    'recipients': 'to',
    'subject': 'subject',
    'tag': 'tag',
    'label': 'tag',
    'id': 'id',
    'mid': 'id',
    'thread': 'thread',
    'before': 'before',
    'after': 'after',
    'has': 'has',
    'attachment': 'attachment',
    'attachments': 'attachment',
}

OPERATORS = {
    'AND': TokenType.AND,
    'OR': TokenType.OR,
    'NOT': TokenType.NOT,
}

# FTS5 barewords are limited to word characters; anything else is quoted
FTS5_BAREWORD = re.compile(r'^\w+$')
FTS5_KEYWORDS = {'AND', 'OR', 'NOT', 'NEAR'}

# Date pattern: YYYY-MM-DD or YYYYMMDD
DATE_PATTERN = re.compile(r'^(\d{4})-?(\d{2})-?(\d{2})$')

FTS_MATCH_SQL = "m.rowid IN (SELECT rowid FROM messages_fts WHERE messages_fts MATCH ?)"


def _read_phrase(query: str, start: int) -> tuple[str | None, int, str | None]:
    """Read a quoted phrase whose opening quote is at query[start].

    Returns:
        Tuple of (phrase, index after closing quote, error_message)
    """
    end = query.find('"', start + 1)
    if end == -1:
        partial = query[start+1:start+21]
        if len(query) > start + 21:
            partial += "..."
        return None, len(query), f"Unclosed quote after '{partial}'"
    return query[start+1:end], end + 1, None


def _tokenize(query: str) -> tuple[list[Token], str | None]:
    """Tokenize a search query into structured tokens.

    Returns:
        Tuple of (tokens, error_message). If error_message is set, tokens may be incomplete.
    """
    tokens = []
    i = 0
    query = query.strip()

    while i < len(query):
        # Skip whitespace
        while i < len(query) and query[i].isspace():
            i += 1
        if i >= len(query):
            break

        char = query[i]

        if char == '(':
            tokens.append(Token(TokenType.LPAREN, '('))
            i += 1
            continue
        if char == ')':
            tokens.append(Token(TokenType.RPAREN, ')'))
            i += 1
            continue

        # Negation (must be followed by a word or quote, not whitespace)
        negated = False
        if char == '-' and i + 1 < len(query) and not query[i+1].isspace():
            if query[i+1] == '(':
                tokens.append(Token(TokenType.NOT, '-'))
                i += 1
                continue
            negated = True
            i += 1
            char = query[i]

        if char == '"':
            phrase, i, error = _read_phrase(query, i)
            if error:
                return tokens, error
            tokens.append(Token(TokenType.PHRASE, phrase, negated=negated))
            continue

        # Word, operator or filter: collect until whitespace or special char
        j = i
        while j < len(query) and not query[j].isspace() and query[j] not in '()"':
            j += 1
        segment = query[i:j]

        if not segment:
            # A lone '-' before '(' or similar
            return tokens, f"Nothing to negate at position {i}"

        if not negated and segment.upper() in OPERATORS:
            tokens.append(Token(OPERATORS[segment.upper()], segment.upper()))
            i = j
            continue

        colon_pos = segment.find(':')
        if colon_pos > 0:
            field_name = FILTER_ALIASES.get(segment[:colon_pos].lower())
            if field_name:
                field_value = segment[colon_pos+1:]
                # Allow quoted filter values: subject:"weekly report"
                if not field_value and j < len(query) and query[j] == '"':
                    field_value, j, error = _read_phrase(query, j)
                    if error:
                        return tokens, error
                if not field_value:
                    prefix = '-' if negated else ''
                    return tokens, f"Empty value for '{prefix}{segment[:colon_pos]}:' filter"
                tokens.append(Token(TokenType.FILTER, field_value, field=field_name, negated=negated))
                i = j
                continue

        # Plain word (unknown field prefixes are searched as text)
        tokens.append(Token(TokenType.WORD, segment, negated=negated))
        i = j

    return tokens, None


def _validate_tokens(tokens: list[Token]) -> str | None:
    """Validate token sequence for logical errors.

    Returns error message if invalid, None if valid.
    """
    if not tokens:
        return None

    binary = (TokenType.AND, TokenType.OR)

    if tokens[0].type in binary:
        return f"Search cannot start with {tokens[0].value}"
    if tokens[-1].type in binary or tokens[-1].type == TokenType.NOT:
        return f"Search cannot end with {tokens[-1].value}"

    for prev, token in zip(tokens, tokens[1:]):
        if prev.type in binary + (TokenType.NOT,) and token.type in binary:
            return f"Invalid: {prev.value} followed by {token.value}"
        if prev.type in binary + (TokenType.NOT, TokenType.LPAREN) and token.type == TokenType.RPAREN:
            if prev.type == TokenType.LPAREN:
                return "Empty parentheses"
            return f"Invalid: {prev.value} before closing parenthesis"
        if prev.type == TokenType.LPAREN and token.type in binary:
            return f"Invalid: {token.value} after opening parenthesis"

    # Check parentheses balance
    depth = 0
    for token in tokens:
        if token.type == TokenType.LPAREN:
            depth += 1
        elif token.type == TokenType.RPAREN:
            depth -= 1
            if depth < 0:
                return "Unmatched closing parenthesis"
    if depth > 0:
        return "Unclosed parenthesis"

    return None


def _escape_fts5_value(value: str) -> str:
    """Escape a value for safe inclusion in FTS5 query.

    Wraps in quotes unless it is a plain bareword.
    Escapes internal quotes by doubling them.
    Preserves trailing * for prefix matching.
    """
    if value.endswith('*') and len(value) > 1:
        return _escape_fts5_value(value[:-1]) + '*'

    if FTS5_BAREWORD.match(value) and value.upper() not in FTS5_KEYWORDS:
        return value

    escaped = value.replace('"', '""')
    return f'"{escaped}"'


def _normalize_date(date_str: str) -> str | None:
    """Normalize date string to YYYY-MM-DD format.

    Accepts YYYY-MM-DD or YYYYMMDD.
    Returns None if invalid.
    """
    match = DATE_PATTERN.match(date_str)
    if not match:
        return None
    year, month, day = match.groups()
    m, d = int(month), int(day)
    if not (1 <= m <= 12 and 1 <= d <= 31):
        return None
    return f"{year}-{month}-{day}"


class _CompileError(Exception):
    pass


class _Compiler:
    """Recursive-descent compiler from tokens to SQL.

    Grammar (NOT binds tighter than AND, AND tighter than OR):
        or_expr  := and_expr (OR and_expr)*
        and_expr := unary ([AND] unary)*
        unary    := NOT unary | primary
        primary  := '(' or_expr ')' | term
    """

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.pos = 0
        self.params: list = []

    def _peek(self) -> Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def compile(self) -> str:
        sql = self._or_expr()
        if self._peek() is not None:
            raise _CompileError(f"Unexpected '{self._peek().value}'")
        return sql

    def _or_expr(self) -> str:
        parts = [self._and_expr()]
        while self._peek() is not None and self._peek().type == TokenType.OR:
            self._next()
            parts.append(self._and_expr())
        if len(parts) == 1:
            return parts[0]
        return "(" + " OR ".join(parts) + ")"

    def _and_expr(self) -> str:
        parts = [self._unary()]
        while self._peek() is not None and self._peek().type not in (TokenType.OR, TokenType.RPAREN):
            if self._peek().type == TokenType.AND:
                self._next()
            parts.append(self._unary())
        parts = [p for p in parts if p != MATCH_ALL] or [MATCH_ALL]
        if len(parts) == 1:
            return parts[0]
        return "(" + " AND ".join(parts) + ")"

    def _unary(self) -> str:
        token = self._peek()
        if token is None:
            raise _CompileError("Unexpected end of search")
        if token.type == TokenType.NOT:
            self._next()
            return f"NOT ({self._unary()})"
        return self._primary()

    def _primary(self) -> str:
        token = self._next()
        if token.type == TokenType.LPAREN:
            sql = self._or_expr()
            closing = self._peek()
            if closing is None or closing.type != TokenType.RPAREN:
                raise _CompileError("Unclosed parenthesis")
            self._next()
            return f"({sql})"
        if token.type in (TokenType.WORD, TokenType.PHRASE, TokenType.FILTER):
            sql = self._term(token)
            return f"NOT ({sql})" if token.negated else sql
        raise _CompileError(f"Unexpected '{token.value}'")

    def _fts(self, match: str) -> str:
        self.params.append(match)
        return FTS_MATCH_SQL

    def _bind(self, sql: str, value) -> str:
        self.params.append(value)
        return sql

    def _term(self, token: Token) -> str:
        if token.type == TokenType.WORD:
            if token.value == '*':
                return MATCH_ALL
            return self._fts(_escape_fts5_value(token.value))

        if token.type == TokenType.PHRASE:
            if not token.value.strip():
                raise _CompileError("Empty phrase")
            escaped = token.value.replace('"', '""')
            return self._fts(f'"{escaped}"')

        field_name = token.field
        value = token.value

        if field_name == 'from':
            if '@' in value:
                return self._bind("m.sender_email = ?", value.lower())
            return self._fts(f'sender:{_escape_fts5_value(value)}')

        if field_name == 'to':
            if '@' in value:
                return self._bind(
                    "EXISTS (SELECT 1 FROM message_recipients r "
                    "WHERE r.message_rowid = m.rowid AND r.address = ?)",
                    value.lower(),
                )
            return self._fts(f'recipients:{_escape_fts5_value(value)}')

        if field_name == 'subject':
            return self._fts(f'subject:{_escape_fts5_value(value)}')

        if field_name == 'attachment':
            return self._fts(f'attachments:{_escape_fts5_value(value)}')

        if field_name == 'tag':
            return self._bind(
                "EXISTS (SELECT 1 FROM message_tags t "
                "WHERE t.message_rowid = m.rowid AND t.tag = ?)",
                value,
            )

        if field_name == 'id':
            return self._bind("m.message_id = ?", value.strip('<>'))

        if field_name == 'thread':
            return self._bind("m.thread_id = ?", value)

        if field_name in ('before', 'after'):
            normalized = _normalize_date(value)
            if normalized is None:
                raise _CompileError(f"Invalid date format for '{field_name}:': {value}")
            op = '<' if field_name == 'before' else '>='
            return self._bind(f"m.date {op} ?", normalized)

        if field_name == 'has':
            if value.lower() in ('attachment', 'attachments'):
                return "m.has_attachments = 1"
            raise _CompileError(f"Unknown value for 'has:': {value}")

        raise _CompileError(f"Unsupported filter '{field_name}:'")


def parse_query(query: str) -> ParsedQuery:
    """Parse a user search query into a SQL WHERE expression.

    Args:
        query: User's search query string; empty means every message

    Returns:
        ParsedQuery with where_sql, params, and optional error
    """
    if not query or not query.strip():
        return ParsedQuery()

    tokens, error = _tokenize(query)
    if error:
        return ParsedQuery(error=error)

    error = _validate_tokens(tokens)
    if error:
        return ParsedQuery(error=error)

    compiler = _Compiler(tokens)
    try:
        where_sql = compiler.compile()
    except _CompileError as e:
        return ParsedQuery(error=str(e))

    return ParsedQuery(where_sql=where_sql, params=compiler.params)


def compile_query(query: str) -> ParsedQuery:
    """Compile a search query, raising on syntax errors.

    Raises:
        QueryCompileError: If the query cannot be parsed
    """
    parsed = parse_query(query)
    if parsed.has_error():
        raise QueryCompileError(f"Invalid search query: {parsed.error}")
    return parsed
