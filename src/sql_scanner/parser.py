"""
SQL Object Dependency Graph Scanner - T-SQL parser
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details

Turns object definitions into the syntax tree of syntax.py. sqlparse does the
lexing, statement splitting and grouping (parentheses, dotted names, aliases,
function calls, CASE). A T-SQL token filter fixes what the generic lexer gets
wrong, and a statement pass over the grouped output recognizes the DML, EXEC
and BEGIN/END structure sqlparse leaves flat.
"""
import bisect
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlparse import sql
from sqlparse import tokens as T
from sqlparse.engine import FilterStack
from sqlparse.exceptions import SQLParseError
from sqlparse.lexer import Lexer

from .syntax import (
    Argument, Block, CommonTableExpression, DerivedTable, DmlStatement,
    ExecuteDynamic, ExecuteProcedure, FunctionCall, FunctionTableReference,
    NodeKind, ObjectName, QualifiedJoin, Script, Select, StringLiteral,
    SyntaxNode, TableReference, Variable
)

logger = logging.getLogger(__name__)

MAX_NESTING = 100

# Element kinds
WORD = 'word'
NAME = 'name'
CALL = 'call'
PAREN = 'paren'
GROUP = 'group'
STRING = 'string'
NUMBER = 'number'
VARIABLE = 'variable'
PUNCT = 'punct'
OPERATOR = 'operator'
OTHER = 'other'

# Words that start a statement
STATEMENT_WORDS = frozenset((
    'SELECT', 'INSERT', 'UPDATE', 'DELETE', 'MERGE', 'EXEC', 'EXECUTE', 'WITH',
    'CREATE', 'ALTER', 'DROP', 'DECLARE', 'SET', 'IF', 'ELSE', 'WHILE', 'BEGIN',
    'END', 'RETURN', 'PRINT', 'RAISERROR', 'THROW', 'TRUNCATE', 'COMMIT',
    'ROLLBACK', 'SAVE', 'GOTO', 'BREAK', 'CONTINUE', 'WAITFOR', 'OPEN', 'CLOSE',
    'FETCH', 'DEALLOCATE', 'USE', 'GO', 'GRANT', 'DENY', 'REVOKE', 'BULK', 'DBCC',
    'CHECKPOINT', 'KILL', 'RECONFIGURE', 'REVERT', 'ENABLE', 'DISABLE', 'BACKUP',
    'RESTORE', 'SHUTDOWN', 'READTEXT', 'WRITETEXT', 'UPDATETEXT', 'SETUSER',
    'RECEIVE', 'SEND', 'MOVE', 'GET',
))

PERMISSION_WORDS = frozenset(('SELECT', 'INSERT', 'UPDATE', 'DELETE', 'EXEC', 'EXECUTE',
                              'ALTER', 'CREATE', 'DROP', 'REVOKE'))

SET_OPERATORS = frozenset(('UNION', 'UNION ALL', 'EXCEPT', 'INTERSECT'))

NON_CALLABLE = frozenset((
    'IN', 'EXISTS', 'VALUES', 'AS', 'AND', 'OR', 'NOT', 'ON', 'OVER', 'WHEN',
    'THEN', 'ELSE', 'FROM', 'WHERE', 'INTO', 'USING', 'TOP', 'TABLE', 'KEY',
    'PRIMARY KEY', 'REFERENCES', 'CHECK', 'UNIQUE', 'DEFAULT', 'INCLUDE',
    'OPTION', 'FOR', 'PIVOT', 'UNPIVOT', 'ALL', 'ANY', 'SOME', 'BY', 'WITH',
    'OUTPUT', 'RETURNS', 'IS', 'LIKE', 'BETWEEN', 'SELECT',
))

ALIAS_STOPS = frozenset((
    'ON', 'WHERE', 'GROUP BY', 'ORDER BY', 'GROUP', 'ORDER', 'HAVING', 'INNER',
    'LEFT', 'RIGHT', 'FULL', 'CROSS', 'OUTER', 'UNION', 'UNION ALL', 'EXCEPT',
    'INTERSECT', 'OPTION', 'USING', 'WHEN', 'OUTPUT', 'VALUES', 'INTO', 'FROM',
    'FOR', 'PIVOT', 'UNPIVOT', 'TABLESAMPLE', 'THEN', 'AND', 'OR', 'NOT', 'AS',
    'OFFSET', 'JOIN', 'APPLY', 'DEFAULT', 'IN',
))

JOIN_MODIFIERS = frozenset(('INNER', 'LEFT', 'RIGHT', 'FULL', 'OUTER', 'CROSS',
                            'HASH', 'MERGE', 'LOOP', 'REMOTE'))

TABLE_HINTS = frozenset((
    'NOLOCK', 'READUNCOMMITTED', 'READCOMMITTED', 'READCOMMITTEDLOCK',
    'REPEATABLEREAD', 'SERIALIZABLE', 'HOLDLOCK', 'UPDLOCK', 'XLOCK', 'ROWLOCK',
    'PAGLOCK', 'TABLOCK', 'TABLOCKX', 'NOWAIT', 'READPAST', 'NOEXPAND', 'INDEX',
    'FORCESEEK', 'FORCESCAN', 'SNAPSHOT',
))

NON_BLOCK_BEGIN = frozenset(('TRAN', 'TRANSACTION', 'DISTRIBUTED', 'DIALOG', 'CONVERSATION'))

ROUTINE_WORDS = frozenset(('PROCEDURE', 'PROC', 'FUNCTION', 'VIEW', 'TRIGGER'))

# Functions that may stand in for a table as a DML target
ROWSET_FUNCTIONS = frozenset(('OPENQUERY', 'OPENROWSET', 'OPENDATASOURCE'))

# Names sqlparse lexes as plain names that T-SQL treats as keywords
TSQL_KEYWORDS = STATEMENT_WORDS | NON_CALLABLE | frozenset((
    'TOP', 'PERCENT', 'TIES', 'APPLY', 'MATCHED', 'TRY', 'CATCH', 'TRAN',
    'PROC', 'DISTRIBUTED', 'DIALOG', 'CONVERSATION', 'ATOMIC',
))

_DOT = (T.Punctuation, '.')


@dataclass(frozen=True)
class ParseError:
    message: str
    line: int = 0
    column: int = 0

    def __str__(self):
        return f"line {self.line}, column {self.column}: {self.message}"


class _NestingTooDeep(Exception):

    def __init__(self, line: int, column: int):
        super().__init__("Statement is nested too deeply.")
        self.line = line
        self.column = column


def identifier(value: str) -> str:
    """Unquote a bracketed, double-quoted or back-ticked identifier."""
    if len(value) < 2:
        return value
    opening, closing = value[0], value[-1]
    if opening == '[' and closing == ']':
        return value[1:-1].replace(']]', ']')
    if opening in '"`' and closing == opening:
        return value[1:-1].replace(closing * 2, closing)
    return value


def literal_value(raw: str) -> Optional[str]:
    """Value of a string literal token, e.g. N'It''s' -> It's.

    Returns:
        The unquoted value, or None when raw is not a string literal
    """
    text = raw or ''
    if len(text) > 1 and text[0] in 'Nn' and text[1] == "'":
        text = text[1:]
    if len(text) < 2 or text[0] != "'" or text[-1] != "'":
        return None
    return text[1:-1].replace("''", "'")


def literal_text(nodes: Iterable[SyntaxNode]) -> Optional[str]:
    """Concatenate string literal nodes; None if any node is not a literal."""
    values = []
    for node in nodes:
        if node.kind != NodeKind.STRING_LITERAL:
            return None
        value = literal_value(node.value)
        if value is None:
            return None
        values.append(value)
    if not values:
        return None
    return ''.join(values)


class TsqlFilter:
    """sqlparse preprocess filter for T-SQL token streams.

    The generic lexer joins END IF and END WHILE into one keyword, splits
    N'...' literals and one-letter @ and # names in two, lexes any word before
    '(' as a name and any keyword after '.' as a keyword. This filter undoes
    those, so that grouping sees T-SQL shaped tokens.
    """

    def process(self, stream):
        return self._retype(self._join_sigils(self._split_end(stream)))

    @staticmethod
    def _split_end(stream):
        for ttype, value in stream:
            words = value.split()
            if ttype in T.Keyword and len(words) == 2 and words[0].upper() == 'END':
                yield T.Keyword, words[0]
                yield T.Whitespace, value[len(words[0]):len(value) - len(words[1])]
                yield T.Keyword, words[1]
            else:
                yield ttype, value

    def _join_sigils(self, stream):
        held = None
        for current in stream:
            if held is None:
                held = current
                continue
            joined = self._join(held, current)
            if joined is None:
                yield held
                held = current
            else:
                yield from joined
                held = None
        if held is not None:
            yield held

    @staticmethod
    def _join(first, second):
        ttype, value = first
        next_type, next_value = second
        if ttype is T.Name and value in ('N', 'n') and next_type in T.String.Single:
            return [(T.String.Single, value + next_value)]
        if (ttype in T.Operator and value[-1] in '@#'
                and (next_type is T.Name or next_type in T.Keyword)
                and (next_value[0].isalnum() or next_value[0] == '_')):
            prefix = value.rstrip(value[-1])
            sigil = value[len(prefix):]
            if sigil not in ('@', '@@', '#', '##'):
                return None
            joined = [(T.Name, sigil + next_value)]
            return [(T.Operator, prefix)] + joined if prefix else joined
        return None

    def _retype(self, stream):
        previous = None
        held = None
        for current in stream:
            if held is not None:
                held = self._retype_one(previous, held, current)
                yield held
                previous = held
            held = current
        if held is not None:
            yield self._retype_one(previous, held, None)

    @staticmethod
    def _retype_one(previous, token, following):
        ttype, value = token
        if ttype in T.Keyword and previous == _DOT:
            return T.Name, value
        if ttype is T.Name and value.upper() in TSQL_KEYWORDS and following != _DOT:
            keyword_type, _ = Lexer.get_default_instance().is_keyword(value)
            return (keyword_type if keyword_type in T.Keyword else T.Keyword), value
        return token


class _Positions:
    """Line and column of every token of the parsed statements."""

    def __init__(self, text: str, statements: Sequence[sql.Statement]):
        self._line_starts = [0]
        self._line_starts.extend(index + 1 for index, char in enumerate(text) if char == '\n')
        self._offsets = {}
        offset = 0
        for statement in statements:
            for token in statement.flatten():
                self._offsets[id(token)] = offset
                offset += len(token.value)

    def of(self, token) -> Tuple[int, int]:
        if token.is_group:
            token = next((leaf for leaf in token.flatten() if not leaf.is_whitespace), None)
        offset = self._offsets.get(id(token)) if token is not None else None
        if offset is None:
            return 1, 1
        line = bisect.bisect_right(self._line_starts, offset)
        return line, offset - self._line_starts[line - 1] + 1


def _check_tokens(statements: Sequence[sql.Statement], positions: _Positions) -> List[ParseError]:
    """Lexical errors and parenthesis balance."""
    errors = []
    open_tokens = []
    for statement in statements:
        for token in statement.flatten():
            if token.ttype in T.Error:
                errors.append(ParseError(f"Incorrect syntax near '{token.value}'.", *positions.of(token)))
            elif token.match(T.Punctuation, ('[', ']')):
                errors.append(ParseError(f"Unclosed quoted identifier near '{token.value}'.",
                                         *positions.of(token)))
            elif token.match(T.Punctuation, '('):
                open_tokens.append(token)
            elif token.match(T.Punctuation, ')'):
                if open_tokens:
                    open_tokens.pop()
                else:
                    errors.append(ParseError("Incorrect syntax near ')'.", *positions.of(token)))
    if open_tokens:
        errors.append(ParseError("Missing closing parenthesis.", *positions.of(open_tokens[-1])))
    return errors


def _significant(tokens: Iterable[sql.Token]) -> List[sql.Token]:
    return [token for token in tokens
            if not (token.is_whitespace or isinstance(token, sql.Comment) or token.ttype in T.Comment)]


def _alias_of(tokens: Sequence[sql.Token]) -> Optional[str]:
    """The alias written by tokens, if they are a single plain name."""
    if len(tokens) != 1:
        return None
    token = tokens[0]
    if isinstance(token, sql.Identifier):
        inner = _significant(token.tokens)
        if len(inner) != 1:
            return None
        token = inner[0]
    if token.ttype is T.String.Single:
        return literal_value(token.value)
    if token.ttype in (T.Name, T.String.Symbol) and token.value[:1] not in ('@', '#'):
        return identifier(token.value)
    return None


class _Element:
    """One significant item of the grouped token stream."""

    __slots__ = ('kind', 'value', 'line', 'column', 'parts', 'quoted', 'alias',
                 'items', 'extra', 'upper')

    def __init__(self, kind: str, value: str, position: Tuple[int, int],
                 parts: Optional[List[Optional[str]]] = None, quoted: bool = False,
                 items: Optional[List["_Element"]] = None):
        self.kind = kind
        self.value = value
        self.line, self.column = position
        self.parts = parts or []
        self.quoted = quoted
        self.alias: Optional[str] = None
        self.items = items or []
        self.extra: List[_Element] = []
        if kind == WORD:
            self.upper = ' '.join(value.upper().split())
        elif kind in (NAME, CALL) and len(self.parts) == 1 and not quoted:
            self.upper = (self.parts[0] or '').upper()
        else:
            self.upper = ''

    @property
    def head(self) -> str:
        return self.upper.split(' ', 1)[0] if self.upper else ''

    def is_word(self, *words) -> bool:
        return self.kind == WORD and self.upper in words

    def is_punct(self, value: str) -> bool:
        return self.kind == PUNCT and self.value == value

    @property
    def object_name(self) -> ObjectName:
        if self.kind == WORD:
            return ObjectName(self.value)
        return ObjectName.from_parts(self.parts)

    @property
    def simple_name(self) -> str:
        if self.kind == WORD:
            return self.value
        return self.parts[-1] or ''

    def __repr__(self):
        return f"_Element({self.kind}, {self.value!r})"


class _Converter:
    """Turns grouped sqlparse statements into a flat list of elements.

    Parentheses, function calls and CASE expressions keep their contents as
    nested elements; dotted names with their alias become one element; every
    other group is flattened.
    """

    def __init__(self, positions: _Positions, max_nesting: int):
        self.positions = positions
        self.max_nesting = max_nesting

    def convert(self, statements: Sequence[sql.Statement]) -> List[_Element]:
        elements: List[_Element] = []
        for statement in statements:
            elements.extend(self._convert_tokens(statement.tokens, 0))
        return elements

    def _convert_tokens(self, tokens: Iterable[sql.Token], depth: int) -> List[_Element]:
        elements: List[_Element] = []
        for token in tokens:
            converted = self._convert(token, depth)
            if (converted and elements and elements[-1].is_word('TOP')
                    and converted[0].kind == PAREN and converted[0].alias):
                # TOP (n) name: grouping took the name for an alias
                paren = converted[0]
                name = _Element(NAME, paren.alias, (paren.line, paren.column), parts=[paren.alias])
                paren.alias = None
                converted.insert(1, name)
            elements.extend(converted)
        return elements

    def _convert(self, token: sql.Token, depth: int) -> List[_Element]:
        if token.is_whitespace or isinstance(token, sql.Comment) or token.ttype in T.Comment:
            return []
        if isinstance(token, sql.Parenthesis):
            return [self._paren(token, depth)]
        if isinstance(token, sql.Function):
            if token.value.startswith('@'):
                # @table (columns)
                return self._convert_tokens(token.tokens, depth)
            return [self._call(token, [], depth)]
        if isinstance(token, sql.Case):
            return [self._case(token, depth)]
        if isinstance(token, sql.Identifier):
            return self._identifier(token, depth)
        if token.is_group:
            return self._convert_tokens(token.tokens, depth)
        leaf = self._leaf(token)
        return [leaf] if leaf is not None else []

    def _enter(self, token: sql.Token, depth: int) -> int:
        depth += 1
        if depth > self.max_nesting:
            raise _NestingTooDeep(*self.positions.of(token))
        return depth

    def _paren(self, token: sql.Parenthesis, depth: int) -> _Element:
        depth = self._enter(token, depth)
        tokens = token.tokens
        opening = next(i for i, child in enumerate(tokens) if child.match(T.Punctuation, '('))
        closing = max(i for i, child in enumerate(tokens) if child.match(T.Punctuation, ')'))
        items = self._convert_tokens(tokens[opening + 1:closing], depth)
        return _Element(PAREN, str(token), self.positions.of(token), items=items)

    def _call(self, token: sql.Function, prefix: List[Optional[str]], depth: int) -> _Element:
        name = next(leaf for leaf in token.flatten() if not leaf.is_whitespace)
        paren = None
        extra = []
        for child in _significant(token.tokens)[1:]:
            if paren is None and isinstance(child, sql.Parenthesis):
                paren = child
            elif paren is not None:
                extra.append(child)
        element = _Element(CALL, str(token), self.positions.of(token),
                           parts=list(prefix) + [identifier(name.value)],
                           quoted=name.value[:1] in '["`' if not prefix else False)
        if paren is not None:
            element.items = self._paren(paren, depth).items
        element.extra = self._convert_tokens(extra, depth)
        return element

    def _case(self, token: sql.Case, depth: int) -> _Element:
        depth = self._enter(token, depth)
        tokens = _significant(token.tokens)
        inner = tokens[1:-1] if tokens and tokens[-1].match(T.Keyword, 'END') else tokens[1:]
        return _Element(GROUP, 'CASE', self.positions.of(token),
                        items=self._convert_tokens(inner, depth))

    def _identifier(self, token: sql.Identifier, depth: int) -> List[_Element]:
        tokens = _significant(token.tokens)
        for index, child in enumerate(tokens):
            if child.match(T.Keyword, 'AS'):
                head, rest = tokens[:index], tokens[index + 1:]
                alias = _alias_of(rest)
                if alias is None or not head:
                    return (self._name_or_tokens(head, depth) + [self._leaf(child)]
                            + self._convert_tokens(rest, depth))
                return self._with_alias(head, alias, tokens[index:], depth)
        if len(tokens) > 1 and isinstance(tokens[-1], sql.Identifier):
            alias = _alias_of(tokens[-1:])
            if alias is not None:
                return self._with_alias(tokens[:-1], alias, tokens[-1:], depth)
            return self._name_or_tokens(tokens[:-1], depth) + self._identifier(tokens[-1], depth)
        return self._name_or_tokens(tokens, depth)

    def _with_alias(self, head: List[sql.Token], alias: str, tail: List[sql.Token],
                    depth: int) -> List[_Element]:
        converted = self._name_or_tokens(head, depth)
        if len(converted) != 1 or converted[0].kind not in (NAME, CALL, PAREN, VARIABLE):
            # TOP 10 Orders: the alias is a name of its own
            return converted + self._convert_tokens(tail, depth)
        converted[0].alias = alias
        return converted

    def _name_or_tokens(self, tokens: List[sql.Token], depth: int) -> List[_Element]:
        element = self._name(tokens, depth)
        if element is None:
            return self._convert_tokens(tokens, depth)
        return [element]

    def _name(self, tokens: List[sql.Token], depth: int) -> Optional[_Element]:
        """A dotted object name, variable or qualified call, or None."""
        if not tokens:
            return None
        if len(tokens) == 1 and isinstance(tokens[0], sql.Identifier):
            converted = self._identifier(tokens[0], depth)
            return converted[0] if len(converted) == 1 else None
        if len(tokens) == 1 and tokens[0].ttype is T.Name and tokens[0].value.startswith('@'):
            return _Element(VARIABLE, tokens[0].value, self.positions.of(tokens[0]))

        parts: List[Optional[str]] = []
        expect_part = True
        for index, token in enumerate(tokens):
            if token.match(T.Punctuation, '.'):
                if expect_part:
                    parts.append(None)
                expect_part = True
            elif not expect_part:
                return None
            elif (isinstance(token, sql.Function) and index == len(tokens) - 1
                  and not token.value.startswith('@')):
                return self._call(token, parts, depth)
            elif token.ttype is not None and (token.ttype in T.Name or token.ttype in T.String.Symbol
                                              or token.ttype in T.Wildcard):
                if token.value.startswith('@'):
                    return None
                parts.append(identifier(token.value))
                expect_part = False
            else:
                return None
        if expect_part:
            parts.append(None)
        value = ''.join(str(token) for token in tokens)
        quoted = len(parts) == 1 and tokens[0].value[:1] in '["`'
        return _Element(NAME, value, self.positions.of(tokens[0]), parts=parts, quoted=quoted)

    def _leaf(self, token: sql.Token) -> Optional[_Element]:
        ttype, value = token.ttype, token.value
        position = self.positions.of(token)
        if ttype in T.Error:
            return None
        if ttype in T.String.Single:
            return _Element(STRING, value, position)
        if ttype in T.String.Symbol:
            return _Element(NAME, value, position, parts=[identifier(value)], quoted=True)
        if ttype in T.Name.Placeholder:
            return _Element(OTHER, value, position)
        if ttype in T.Name:
            if value.startswith('@'):
                return _Element(VARIABLE, value, position)
            return _Element(NAME, value, position, parts=[identifier(value)],
                            quoted=value[:1] in '[`')
        if ttype in T.Keyword:
            return _Element(WORD, value, position)
        if ttype in T.Number:
            return _Element(NUMBER, value, position)
        if ttype in T.Punctuation:
            if value in ('[', ']'):
                return None
            return _Element(OPERATOR if value == '::' else PUNCT, value, position)
        if ttype in T.Operator or ttype in T.Wildcard or ttype in T.Assignment:
            # word operators such as DIV
            return _Element(WORD if value[:1].isalpha() else OPERATOR, value, position)
        return _Element(OTHER, value, position)


def _only_literals(elements: Sequence[_Element]) -> bool:
    if not elements:
        return False
    return all(element.kind == STRING or (element.kind == OPERATOR and element.value == '+')
               for element in elements)


def _is_callable(element: _Element) -> bool:
    name = element.object_name
    if name.base is None:
        return False
    if name.is_qualified or element.quoted:
        return True
    return element.upper not in NON_CALLABLE


class SqlParser:
    """Parses T-SQL text into a Script node."""

    def __init__(self, max_nesting: int = MAX_NESTING):
        self.max_nesting = max_nesting

    def parse(self, text: str) -> Tuple[Script, List[ParseError]]:
        """Parse SQL text.

        Args:
            text: Definition of a routine, or any T-SQL batch

        Returns:
            Tuple of the syntax tree and the list of parse errors
        """
        text = text or ''
        try:
            statements = self.split(text)
        except SQLParseError:
            return Script(), [ParseError("Statement is nested too deeply.", 1, 1)]

        positions = _Positions(text, statements)
        errors = _check_tokens(statements, positions)
        try:
            elements = _Converter(positions, self.max_nesting).convert(statements)
        except _NestingTooDeep as e:
            errors.append(ParseError(str(e), e.line, e.column))
            elements = []

        parser = _Parser(elements, errors)
        script = Script(children=parser.parse_script())
        errors.sort(key=lambda error: (error.line, error.column))
        logger.debug("Parsed %d statements with %d errors", len(script.children), len(errors))
        return script, errors

    @staticmethod
    def split(text: str) -> List[sql.Statement]:
        """Grouped sqlparse statements of text, lexed with the T-SQL filter."""
        stack = FilterStack()
        stack.preprocess.append(TsqlFilter())
        stack.enable_grouping()
        return list(stack.run(text))


class _Parser:
    """Statement pass over one list of elements."""

    def __init__(self, elements: List[_Element], errors: List[ParseError]):
        self.elements = elements
        self.pos = 0
        self.errors = errors
        self._statement_parsers = {
            'SELECT': self._parse_select,
            'INSERT': self._parse_insert,
            'UPDATE': self._parse_update,
            'DELETE': self._parse_delete,
            'MERGE': self._parse_merge,
            'EXEC': self._parse_execute,
            'EXECUTE': self._parse_execute,
            'CREATE': self._parse_create,
            'ALTER': self._parse_create,
            'GRANT': self._parse_permission,
            'DENY': self._parse_permission,
            'REVOKE': self._parse_permission,
        }

    def _inner(self, element: _Element, items: Optional[List[_Element]] = None) -> "_Parser":
        return _Parser(element.items if items is None else items, self.errors)

    # Element access

    def peek(self, ahead: int = 0) -> Optional[_Element]:
        index = self.pos + ahead
        if index < len(self.elements):
            return self.elements[index]
        return None

    def advance(self) -> _Element:
        element = self.elements[self.pos]
        self.pos += 1
        return element

    def accept_word(self, *words) -> bool:
        element = self.peek()
        if element is not None and element.is_word(*words):
            self.pos += 1
            return True
        return False

    def accept_punct(self, value: str) -> bool:
        element = self.peek()
        if element is not None and element.is_punct(value):
            self.pos += 1
            return True
        return False

    def error(self, message: str, element: Optional[_Element] = None):
        if element is None:
            element = self.peek() or (self.elements[-1] if self.elements else None)
        if element is None:
            self.errors.append(ParseError(message, 1, 1))
        else:
            self.errors.append(ParseError(message, element.line, element.column))

    # Classification helpers

    def _is_cte_start(self, ahead: int = 0) -> bool:
        element, name, following = self.peek(ahead), self.peek(ahead + 1), self.peek(ahead + 2)
        return (element is not None and element.is_word('WITH')
                and name is not None and name.kind in (NAME, WORD, CALL)
                and following is not None
                and (following.is_word('AS') or (following.kind == PAREN and name.kind != CALL)))

    def _at_boundary(self, stops: Iterable[str] = (), passthrough: Iterable[str] = ()) -> bool:
        element = self.peek()
        if element is None:
            return True
        if element.kind == PUNCT:
            return element.value in (';', ')')
        if element.kind != WORD:
            return False
        if element.upper in stops or element.head in stops:
            return True
        head = element.head
        if head in STATEMENT_WORDS and head not in passthrough:
            if head == 'WITH':
                return self._is_cte_start()
            return True
        return False

    def _is_query_start(self, ahead: int = 0) -> bool:
        element = self.peek(ahead)
        if element is None:
            return False
        return element.is_word('SELECT') or self._is_cte_start(ahead)

    def _join_length(self) -> int:
        """Number of elements making up a join operator at the cursor, 0 if none."""
        for ahead in range(4):
            element = self.peek(ahead)
            if element is None or element.kind not in (WORD, NAME) or not element.upper:
                return 0
            if element.kind == WORD and element.upper.endswith('JOIN'):
                return ahead + 1
            if element.upper not in JOIN_MODIFIERS:
                return 0
        return 0

    def _at_apply(self) -> bool:
        element, following = self.peek(), self.peek(1)
        return (element is not None and element.is_word('CROSS', 'OUTER')
                and following is not None and following.is_word('APPLY'))

    def _at_hint_parentheses(self) -> bool:
        element = self.peek()
        return (element is not None and element.kind == PAREN and bool(element.items)
                and element.items[0].upper in TABLE_HINTS)

    # Statements

    def parse_script(self) -> List[SyntaxNode]:
        statements: List[SyntaxNode] = []
        block_depth = 0
        while self.peek() is not None:
            element = self.peek()
            if element.kind == PAREN:
                statements.append(Block(children=self._parse_expression(), line=element.line))
                continue
            if element.kind == PUNCT and element.value in ('(', ';', ')'):
                # unbalanced parentheses are reported by the token check
                self.advance()
                continue
            following = self.peek(1)
            if (element.kind in (WORD, NAME) and element.head not in STATEMENT_WORDS
                    and following is not None and following.is_punct(':')):
                # label
                self.pos += 2
                continue
            if element.kind != WORD:
                self.error(f"Incorrect syntax near '{element.value}'.", element)
                self.advance()
                self._parse_expression()
                continue

            head = element.head
            if head == 'BEGIN':
                if following is not None and following.head in NON_BLOCK_BEGIN:
                    statements.append(self._parse_block())
                    continue
                self.advance()
                self.accept_word('TRY', 'CATCH', 'ATOMIC')
                block_depth += 1
                continue
            if head == 'END':
                self.advance()
                self.accept_word('TRY', 'CATCH')
                if block_depth == 0:
                    self.error("Incorrect syntax near 'END'.", element)
                else:
                    block_depth -= 1
                continue
            if head == 'ELSE':
                self.advance()
                continue
            if head == 'WITH':
                if self._is_cte_start():
                    statements.append(self._parse_with())
                else:
                    statements.append(self._parse_block())
                continue

            parse = self._statement_parsers.get(head)
            if parse is not None:
                statements.append(parse())
            elif head in STATEMENT_WORDS:
                statements.append(self._parse_block())
            else:
                self.error(f"Incorrect syntax near '{element.value}'.", element)
                self.advance()
                self._parse_expression()

        if block_depth > 0:
            self.error("Missing END for BEGIN block.")
        return statements

    def _parse_block(self, passthrough: Iterable[str] = ()) -> Block:
        element = self.advance()
        return Block(children=self._parse_expression(passthrough=passthrough), line=element.line)

    def _parse_permission(self) -> Block:
        return self._parse_block(passthrough=PERMISSION_WORDS)

    def _parse_create(self) -> Block:
        element = self.advance()
        if self.accept_word('OR'):
            self.accept_word('ALTER')
        kind = self.peek()
        if kind is None or kind.upper not in ROUTINE_WORDS:
            return Block(children=self._parse_expression(), line=element.line)

        # Routine header up to AS; the body follows as ordinary statements
        self.advance()
        previous = None
        while self.peek() is not None:
            current = self.peek()
            if current.is_word('AS') and not (previous is not None and previous.is_word('EXEC', 'EXECUTE')):
                self.advance()
                break
            if current.is_punct(';'):
                break
            previous = self.advance()
        return Block(line=element.line)

    def _parse_with(self) -> SyntaxNode:
        element = self.advance()
        ctes: List[SyntaxNode] = []
        names: List[str] = []
        while self.peek() is not None and self.peek().kind in (NAME, WORD, CALL):
            name_element = self.advance()
            name = name_element.simple_name
            self.accept_word('AS')
            children: List[SyntaxNode] = []
            if self.peek() is not None and self.peek().kind == PAREN:
                children = self._inner(self.advance())._parse_expression(inside=True)
            ctes.append(CommonTableExpression(alias=name, children=children, line=name_element.line))
            names.append(name.lower())
            if not self.accept_punct(','):
                break

        following = self.peek()
        head = following.head if following is not None and following.kind == WORD else ''
        if head in ('SELECT', 'INSERT', 'UPDATE', 'DELETE', 'MERGE'):
            statement = self._statement_parsers[head]()
        else:
            statement = Block(children=self._parse_expression(), line=element.line)
        statement.children = ctes + statement.children
        statement.cte_names = tuple(names) + statement.cte_names
        return statement

    def _parse_select(self) -> Select:
        element = self.advance()
        children: List[SyntaxNode] = []
        while True:
            current = self.peek()
            if current is None or current.is_punct(';') or current.is_punct(')'):
                break
            if current.kind == WORD:
                if current.upper == 'FROM':
                    self.advance()
                    children.extend(self._parse_table_sources())
                    continue
                if current.upper == 'INTO':
                    self.advance()
                    self._skip_object_name()
                    continue
                if current.upper in SET_OPERATORS:
                    self.advance()
                    self.accept_word('ALL')
                    if self._is_query_start():
                        children.append(self._parse_query())
                    elif self.peek() is not None and self.peek().kind == PAREN:
                        children.extend(self._parse_element())
                    continue
                following = self.peek(1)
                if current.upper == 'FOR' and following is not None and following.is_word('UPDATE'):
                    self.pos += 2
                    if self.accept_word('OF'):
                        self._parse_expression()
                    continue
                if (current.upper == 'WITH' and following is not None
                        and following.is_word('TIES', 'ROLLUP', 'CUBE')):
                    self.pos += 2
                    continue
            if self._at_boundary():
                break
            children.extend(self._parse_element())
        return Select(children=children, line=element.line)

    def _parse_query(self) -> SyntaxNode:
        if self.peek().is_word('WITH'):
            return self._parse_with()
        return self._parse_select()

    def _parse_insert(self) -> DmlStatement:
        element = self.advance()
        self._skip_top()
        self.accept_word('INTO')
        written = self.peek()
        target = self._parse_write_target()
        children: List[SyntaxNode] = []
        if written is not None and written.kind == CALL and target is not None \
                and target.kind == NodeKind.TABLE_REFERENCE:
            # INSERT INTO T (columns) or INSERT INTO T (query)
            inner = self._inner(written)
            if inner._is_query_start():
                children.extend(inner._parse_expression(inside=True))
        self._skip_table_hints()
        self._skip_column_list()

        if self.peek() is not None and self.peek().is_word('OUTPUT'):
            children.extend(self._parse_output())

        current = self.peek()
        if current is not None:
            if current.is_word('VALUES'):
                self.advance()
                while self.peek() is not None and self.peek().kind == PAREN:
                    children.extend(self._parse_element())
                    if not self.accept_punct(','):
                        break
            elif self._is_query_start():
                children.append(self._parse_query())
            elif current.kind == PAREN:
                children.extend(self._parse_element())
            elif current.is_word('EXEC', 'EXECUTE'):
                children.append(self._parse_execute())
            elif current.is_word('DEFAULT'):
                self.advance()
                self.accept_word('VALUES')
        children.extend(self._parse_expression())
        return DmlStatement(kind=NodeKind.INSERT, target=target, children=children, line=element.line)

    def _parse_update(self) -> DmlStatement:
        element = self.advance()
        self._skip_top()
        target = self._parse_write_target()
        self._skip_table_hints()

        children: List[SyntaxNode] = []
        from_clause: List[SyntaxNode] = []
        if self.accept_word('SET'):
            children.extend(self._parse_expression(stops=('FROM', 'WHERE', 'OUTPUT', 'OPTION')))
        if self.peek() is not None and self.peek().is_word('OUTPUT'):
            children.extend(self._parse_output())
        if self.accept_word('FROM'):
            from_clause = self._parse_table_sources()
            children.extend(from_clause)
        children.extend(self._parse_expression())
        return DmlStatement(kind=NodeKind.UPDATE, target=target, from_clause=from_clause,
                            children=children, line=element.line)

    def _parse_delete(self) -> DmlStatement:
        element = self.advance()
        self._skip_top()
        self.accept_word('FROM')
        target = self._parse_write_target()
        self._skip_table_hints()

        children: List[SyntaxNode] = []
        from_clause: List[SyntaxNode] = []
        if self.peek() is not None and self.peek().is_word('OUTPUT'):
            children.extend(self._parse_output())
        if self.accept_word('FROM'):
            from_clause = self._parse_table_sources()
            children.extend(from_clause)
        children.extend(self._parse_expression())
        return DmlStatement(kind=NodeKind.DELETE, target=target, from_clause=from_clause,
                            children=children, line=element.line)

    def _parse_merge(self) -> DmlStatement:
        element = self.advance()
        self._skip_top()
        self.accept_word('INTO')
        target = self._parse_write_target()
        self._skip_table_hints()
        if target is not None and target.kind == NodeKind.TABLE_REFERENCE and target.alias is None:
            target.alias = self._parse_alias()

        children: List[SyntaxNode] = []
        from_clause: List[SyntaxNode] = []
        if self.accept_word('USING'):
            from_clause = self._parse_table_sources()
            children.extend(from_clause)
        if self.accept_word('ON'):
            children.extend(self._parse_expression(stops=('WHEN',)))
        while self.accept_word('WHEN'):
            children.extend(self._parse_expression(stops=('THEN',)))
            self.accept_word('THEN')
            if self.accept_word('UPDATE'):
                self.accept_word('SET')
                children.extend(self._parse_expression(stops=('WHEN', 'OUTPUT', 'OPTION')))
            elif self.accept_word('DELETE'):
                pass
            elif self.accept_word('INSERT'):
                if self.peek() is not None and self.peek().kind == PAREN:
                    self.advance()
                if self.accept_word('VALUES'):
                    if self.peek() is not None and self.peek().kind == PAREN:
                        children.extend(self._parse_element())
                elif self.accept_word('DEFAULT'):
                    self.accept_word('VALUES')
        if self.peek() is not None and self.peek().is_word('OUTPUT'):
            children.extend(self._parse_output())
        children.extend(self._parse_expression())
        return DmlStatement(kind=NodeKind.MERGE, target=target, from_clause=from_clause,
                            children=children, line=element.line)

    def _parse_execute(self) -> SyntaxNode:
        element = self.advance()
        current = self.peek()
        if current is None:
            return ExecuteProcedure(line=element.line)

        if current.kind == PAREN:
            self.advance()
            children = self._inner(current)._parse_expression(inside=True)
            if self.accept_word('AT'):
                self._skip_object_name()
            return ExecuteDynamic(children=children, literal=_only_literals(current.items),
                                  line=element.line)

        if current.is_word('AS'):
            # EXECUTE AS USER = '...': execution context switch
            return Block(children=self._parse_expression(), line=element.line)

        name = None
        if current.kind == VARIABLE:
            following = self.peek(1)
            if following is not None and following.kind == OPERATOR and following.value == '=':
                # EXEC @status = procedure
                self.pos += 2
                current = self.peek()
            else:
                # EXEC @procedure_name: target unknown until run time
                self.advance()
                current = None
        if current is not None and (current.kind == NAME or (current.kind == WORD and not self._at_boundary())):
            self.advance()
            name = current.object_name

        arguments = self._parse_arguments()
        return ExecuteProcedure(name=name, arguments=arguments, children=list(arguments),
                                line=element.line)

    def _parse_arguments(self) -> List[Argument]:
        arguments: List[Argument] = []
        while not self._at_boundary():
            parameter = None
            current, following = self.peek(), self.peek(1)
            if (current.kind == VARIABLE and following is not None
                    and following.kind == OPERATOR and following.value == '='):
                parameter = current.value
                self.pos += 2
            start = self.pos
            children = self._parse_expression(stop_at_comma=True)
            arguments.append(Argument(children=children, parameter=parameter,
                                      literal=_only_literals(self.elements[start:self.pos]),
                                      line=current.line))
            if not self.accept_punct(','):
                break
        return arguments

    def _parse_output(self) -> List[SyntaxNode]:
        """OUTPUT columns, and OUTPUT ... INTO target as a nested INSERT."""
        self.advance()
        children = self._parse_expression(stops=('INTO', 'FROM', 'WHERE', 'VALUES', 'DEFAULT', 'OPTION'))
        into = self.peek()
        if self.accept_word('INTO'):
            target = self._parse_write_target()
            self._skip_column_list()
            if target is not None:
                children.append(DmlStatement(kind=NodeKind.INSERT, target=target, line=into.line))
        return children

    # Table sources

    def _parse_write_target(self) -> Optional[SyntaxNode]:
        current = self.peek()
        if current is None:
            return None
        if current.kind == VARIABLE:
            self.advance()
            return Variable(value=current.value, alias=current.alias, line=current.line)
        if current.kind == CALL:
            self.advance()
            if current.upper in ROWSET_FUNCTIONS:
                return FunctionTableReference(name=current.object_name, children=self._call_children(current),
                                              line=current.line)
            # the parentheses hold a column list
            return TableReference(name=current.object_name, alias=current.alias, line=current.line)
        if current.kind == NAME or (current.kind == WORD and not self._at_boundary()):
            self.advance()
            return TableReference(name=current.object_name, alias=current.alias, line=current.line)
        return None

    def _parse_table_sources(self) -> List[SyntaxNode]:
        sources: List[SyntaxNode] = []
        first = self._parse_table_source()
        if first is None:
            return sources
        sources.append(first)
        while self.peek() is not None:
            current = self.peek()
            if current.is_punct(','):
                self.advance()
                source = self._parse_table_source()
                if source is not None:
                    sources.append(source)
                continue
            join_length = self._join_length()
            if not join_length and not self._at_apply():
                break
            self.pos += join_length or 2
            second = self._parse_table_source()
            condition: List[SyntaxNode] = []
            if self.accept_word('ON'):
                condition = self._parse_expression(stops=('WHERE', 'GROUP BY', 'ORDER BY', 'HAVING',
                                                          'OPTION', 'WHEN', 'OUTPUT')
                                                   + tuple(SET_OPERATORS), stop_at_join=True)
            first = sources.pop() if sources else None
            children = [node for node in (first, second) if node is not None] + condition
            sources.append(QualifiedJoin(first=first, second=second, children=children,
                                         line=current.line))
        return sources

    def _parse_table_source(self) -> Optional[SyntaxNode]:
        current = self.peek()
        if current is None:
            return None
        if current.kind == PAREN:
            self.advance()
            inner = self._inner(current)
            if inner._is_query_start():
                node: SyntaxNode = DerivedTable(children=inner._parse_expression(inside=True),
                                                line=current.line)
                node.alias = current.alias or self._parse_alias()
                # column aliases
                if self.peek() is not None and self.peek().kind == PAREN:
                    self.advance()
            else:
                sources = inner._parse_table_sources()
                sources.extend(inner._parse_expression(inside=True))
                node = Block(children=sources, line=current.line)
                if current.alias is None:
                    self._parse_alias()
        elif current.kind == VARIABLE:
            self.advance()
            node = Variable(value=current.value, alias=current.alias, line=current.line)
            if node.alias is None:
                node.alias = self._parse_alias()
        elif current.kind == CALL:
            self.advance()
            if current.items and current.items[0].upper in TABLE_HINTS:
                # Orders (NOLOCK)
                node = TableReference(name=current.object_name, line=current.line)
            else:
                node = FunctionTableReference(name=current.object_name,
                                              children=self._call_children(current), line=current.line)
            node.alias = current.alias or self._parse_alias()
            self._skip_table_hints()
        elif current.kind == NAME or (current.kind == WORD and not self._at_boundary()):
            self.advance()
            following = self.peek()
            if (following is not None and following.kind == PAREN and not self._at_hint_parentheses()
                    and current.alias is None):
                self.advance()
                node = FunctionTableReference(name=current.object_name,
                                              children=self._inner(following)._parse_expression(inside=True),
                                              line=current.line)
            else:
                node = TableReference(name=current.object_name, line=current.line)
            if self._at_hint_parentheses():
                self.advance()
            node.alias = current.alias or self._parse_alias()
            self._skip_table_hints()
        else:
            return None

        # PIVOT (...) / UNPIVOT (...) AS alias
        while self.peek() is not None and self.peek().is_word('PIVOT', 'UNPIVOT'):
            pivot = self.advance()
            children = [node]
            if self.peek() is not None and self.peek().kind == PAREN:
                paren = self.peek()
                children.extend(self._parse_element())
                if paren.alias is not None:
                    node = Block(children=children, line=pivot.line)
                    continue
            node = Block(children=children, line=pivot.line)
            self._parse_alias()
        return node

    def _parse_alias(self) -> Optional[str]:
        current = self.peek()
        if current is None:
            return None
        if current.is_word('AS'):
            self.advance()
            current = self.peek()
            if current is None or current.kind not in (NAME, WORD, STRING, CALL):
                return None
            self.advance()
            if current.kind == STRING:
                return literal_value(current.value)
            return current.simple_name
        if current.kind == NAME and len(current.parts) == 1:
            self.advance()
            return current.parts[0]
        if current.kind != WORD:
            return None
        if (current.upper in ALIAS_STOPS or current.head in ALIAS_STOPS
                or current.head in STATEMENT_WORDS or current.upper.endswith('JOIN')):
            return None
        self.advance()
        return current.value

    def _skip_object_name(self):
        current = self.peek()
        if current is None:
            return
        if current.kind in (VARIABLE, NAME, CALL) or (current.kind == WORD and not self._at_boundary()):
            self.advance()

    def _skip_column_list(self):
        current = self.peek()
        if current is not None and current.kind == PAREN and not self._inner(current)._is_query_start():
            self.advance()

    # Expressions

    def _parse_expression(self, stops: Sequence[str] = (), inside: bool = False,
                          passthrough: Iterable[str] = (), stop_at_comma: bool = False,
                          stop_at_join: bool = False) -> List[SyntaxNode]:
        """Collect the nodes of an expression up to a boundary.

        Args:
            stops: Extra words ending the expression
            inside: Parsing the contents of parentheses, which only end with the list
            passthrough: Statement words that do not end the expression
            stop_at_comma: End at a top level comma
            stop_at_join: End at a join operator

        Returns:
            Nodes found in the expression
        """
        nodes: List[SyntaxNode] = []
        while True:
            current = self.peek()
            if current is None:
                break
            if inside:
                if current.is_punct(';'):
                    break
                if current.kind == WORD and self._is_query_start():
                    nodes.append(self._parse_query())
                    continue
            elif self._at_boundary(stops, passthrough):
                break
            if stop_at_comma and current.is_punct(','):
                break
            if stop_at_join and (self._join_length() or self._at_apply()):
                break
            nodes.extend(self._parse_element())
        return nodes

    def _parse_element(self) -> List[SyntaxNode]:
        current = self.advance()
        if current.kind == STRING:
            return [StringLiteral(value=current.value, line=current.line)]
        if current.kind == VARIABLE:
            return [Variable(value=current.value, line=current.line)]
        if current.kind in (PAREN, GROUP):
            return self._inner(current)._parse_expression(inside=True)
        if current.kind == CALL:
            children = self._call_children(current)
            if _is_callable(current):
                return [FunctionCall(name=current.object_name, children=children, line=current.line)]
            return children
        if current.is_word('CASE'):
            self.error("Missing END for CASE expression.", current)
            return []
        if current.kind in (NAME, WORD):
            following = self.peek()
            if following is not None and following.kind == PAREN and _is_callable(current):
                self.advance()
                return [FunctionCall(name=current.object_name,
                                     children=self._inner(following)._parse_expression(inside=True),
                                     line=current.line)]
        return []

    def _call_children(self, call: _Element) -> List[SyntaxNode]:
        children = self._inner(call)._parse_expression(inside=True)
        if call.extra:
            children.extend(self._inner(call, call.extra)._parse_expression(inside=True))
        return children

    def _skip_top(self):
        if self.accept_word('TOP'):
            current = self.peek()
            if current is not None and current.kind in (PAREN, NUMBER, VARIABLE):
                self.advance()
            self.accept_word('PERCENT')

    def _skip_table_hints(self):
        current, following = self.peek(), self.peek(1)
        if (current is not None and current.is_word('WITH')
                and following is not None and following.kind == PAREN):
            self.pos += 2
