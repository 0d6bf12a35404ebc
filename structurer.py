from __future__ import annotations
import enum
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple, Union

from lexer import ABAPError


class StructureError(ABAPError):
    """Raised for block-matching and declaration-shape defects found before execution."""


COMMENT_MARKER = '"'
LINE_COMMENT_MARKER = "*"
TERMINATOR = "."
QUOTES = ("'", "`")

_IDENT = r"[A-Za-z_][\w-]*"
_KEYWORD = re.compile(r"^(?P<keyword>[^\s:]+)\s*:?\s*(?P<rest>.*)$", re.DOTALL)
_ASSIGNMENT = re.compile(rf"^{_IDENT}\s*=")
_DECLARATION = re.compile(rf"^(?P<name>{_IDENT})\s+TYPE\s+(?P<rest>.+)$", re.IGNORECASE)
_TABLE_TYPE = re.compile(r"^(?:STANDARD\s+)?TABLE\s+OF\s+(?P<type>[A-Za-z]\w*)(?P<rest>.*)$", re.IGNORECASE)
_SCALAR_TYPE = re.compile(r"^(?P<type>[A-Za-z]\w*)(?P<rest>.*)$")
_VALUE = re.compile(r"\bVALUE\s+(?P<expr>.+)$", re.IGNORECASE)
_LENGTH = re.compile(r"\bLENGTH\s+(?P<n>\d+)\b", re.IGNORECASE)
_DECIMALS = re.compile(r"\bDECIMALS\s+(?P<n>\d+)\b", re.IGNORECASE)
_CONDITION = re.compile(r"^(?P<cond>.*?)(?:\s+THEN)?$", re.IGNORECASE)
_TIMES = re.compile(r"^(?P<count>.+?)\s+TIMES$", re.IGNORECASE)
_LOOP_AT = re.compile(rf"^AT\s+(?P<table>{_IDENT})\s+INTO\s+(?P<wa>{_IDENT})$", re.IGNORECASE)


@dataclass
class SourceLocation:
    line: int
    statement: str


@dataclass
class SourceStatement:
    text: str
    line: int


class StatementKind(enum.Enum):
    DATA = "DATA"
    WRITE = "WRITE"
    ADD = "ADD"
    SUBTRACT = "SUBTRACT"
    CLEAR = "CLEAR"
    APPEND = "APPEND"
    ASSIGNMENT = "ASSIGNMENT"
    UNKNOWN = "UNKNOWN"


@dataclass
class Declaration:
    name: str
    type_name: str
    table: bool = False
    length: Optional[int] = None
    decimals: Optional[int] = None
    value: Optional[str] = None


@dataclass
class Node:
    location: SourceLocation


@dataclass
class Leaf(Node):
    kind: StatementKind
    # Statement text with the keyword (and its optional colon) removed.
    body: str
    declarations: List[Declaration] = field(default_factory=list)


@dataclass
class Clause:
    condition: str
    location: SourceLocation
    body: List[Node] = field(default_factory=list)


@dataclass
class Conditional(Node):
    clauses: List[Clause]
    else_body: List[Node] = field(default_factory=list)
    has_else: bool = False


@dataclass
class CountedLoop(Node):
    keyword: str
    count: str
    body: List[Node] = field(default_factory=list)


@dataclass
class TableLoop(Node):
    table: str
    work_area: str
    body: List[Node] = field(default_factory=list)


@dataclass
class Block(Node):
    body: List[Node] = field(default_factory=list)


BlockNode = Union[Block, Conditional, CountedLoop, TableLoop]


# ---- Statement splitting ----

def _strip_comment(line: str) -> str:
    quote: Optional[str] = None
    for index, ch in enumerate(line):
        if quote is not None:
            if ch == quote:
                quote = None
            continue
        if ch in QUOTES:
            quote = ch
        elif ch == COMMENT_MARKER:
            return line[:index]
    return line


def _collapse_whitespace(text: str) -> str:
    parts: List[str] = []
    quote: Optional[str] = None
    pending_space = False
    for ch in text:
        if quote is None and ch.isspace():
            pending_space = True
            continue
        if pending_space and parts:
            parts.append(" ")
        pending_space = False
        parts.append(ch)
        if quote is not None:
            if ch == quote:
                quote = None
        elif ch in QUOTES:
            quote = ch
    return "".join(parts)


def split_statements(source: str) -> List[SourceStatement]:
    """Split source text into period-terminated statements.

    Comments are removed first.  A dot inside a quoted literal, or between two
    digits, is not a terminator.
    """
    statements: List[SourceStatement] = []
    current: List[str] = []
    start_line: Optional[int] = None

    for line_no, raw in enumerate(source.splitlines(), start=1):
        line = _strip_comment(raw)
        if line.strip().startswith(LINE_COMMENT_MARKER):
            continue
        quote: Optional[str] = None
        for index, ch in enumerate(line):
            if start_line is None and not ch.isspace():
                start_line = line_no
            if quote is not None:
                if ch == quote:
                    quote = None
            elif ch in QUOTES:
                quote = ch
            elif ch == TERMINATOR and not _is_decimal_point(line, index):
                _flush(statements, current, start_line)
                current = []
                start_line = None
                continue
            current.append(ch)
        current.append("\n")
    _flush(statements, current, start_line)
    return statements


def _flush(statements: List[SourceStatement], current: List[str], start_line: Optional[int]) -> None:
    text = _collapse_whitespace("".join(current)).strip()
    if text and start_line is not None:
        statements.append(SourceStatement(text=text, line=start_line))


def _is_decimal_point(line: str, index: int) -> bool:
    return (
        0 < index < len(line) - 1
        and line[index - 1].isdigit()
        and line[index + 1].isdigit()
    )


# ---- Structuring ----

def _split_keyword(text: str) -> Tuple[str, str]:
    match = _KEYWORD.match(text)
    if not match:
        return "", text
    return match.group("keyword").upper(), match.group("rest").strip()


def split_list(text: str, separator: str = ",") -> List[str]:
    """Split on ``separator`` outside quotes and parentheses."""
    parts: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    depth = 0
    for ch in text:
        if quote is not None:
            if ch == quote:
                quote = None
        elif ch in QUOTES:
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == separator and depth <= 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    parts.append("".join(current).strip())
    return [part for part in parts if part]


def parse_declarations(body: str, location: SourceLocation) -> List[Declaration]:
    if not body:
        raise StructureError(f"Line {location.line}: Incomplete DATA declaration")
    declarations: List[Declaration] = []
    for part in split_list(body):
        declarations.append(_parse_declaration(part, location))
    return declarations


def _parse_declaration(text: str, location: SourceLocation) -> Declaration:
    match = _DECLARATION.match(text)
    if not match:
        raise StructureError(f'Line {location.line}: Could not interpret the declaration "{text}"')
    name = match.group("name")
    rest = match.group("rest").strip()

    table_match = _TABLE_TYPE.match(rest)
    type_match = table_match or _SCALAR_TYPE.match(rest)
    if type_match is None:
        raise StructureError(f'Line {location.line}: Could not interpret the type in "{text}"')
    declaration = Declaration(name=name, type_name=type_match.group("type").lower(), table=table_match is not None)
    rest = type_match.group("rest").strip()

    value_match = _VALUE.search(rest)
    if value_match:
        declaration.value = value_match.group("expr").strip()
        rest = rest[:value_match.start()].strip()
    length_match = _LENGTH.search(rest)
    if length_match:
        declaration.length = int(length_match.group("n"))
        rest = (rest[:length_match.start()] + rest[length_match.end():]).strip()
    decimals_match = _DECIMALS.search(rest)
    if decimals_match:
        declaration.decimals = int(decimals_match.group("n"))
        rest = (rest[:decimals_match.start()] + rest[decimals_match.end():]).strip()
    if rest:
        raise StructureError(f'Line {location.line}: Unrecognized parameters in the declaration "{text}"')
    return declaration


def _classify(text: str, location: SourceLocation) -> Leaf:
    keyword, body = _split_keyword(text)
    try:
        kind = StatementKind(keyword)
    except ValueError:
        kind = StatementKind.UNKNOWN
    if kind in (StatementKind.ASSIGNMENT, StatementKind.UNKNOWN):
        if _ASSIGNMENT.match(text):
            return Leaf(location=location, kind=StatementKind.ASSIGNMENT, body=text)
        return Leaf(location=location, kind=StatementKind.UNKNOWN, body=text)
    leaf = Leaf(location=location, kind=kind, body=body)
    if kind is StatementKind.DATA:
        leaf.declarations = parse_declarations(body, location)
    return leaf


@dataclass
class _Frame:
    node: BlockNode
    target: List[Node]
    opening: SourceLocation


def _describe(frame: _Frame) -> str:
    node = frame.node
    if isinstance(node, Conditional):
        return "IF"
    if isinstance(node, CountedLoop):
        return node.keyword
    return "LOOP"


def _terminator(frame: _Frame) -> str:
    node = frame.node
    if isinstance(node, Conditional):
        return "ENDIF"
    if isinstance(node, CountedLoop) and node.keyword == "DO":
        return "ENDDO"
    return "ENDLOOP"


def _condition(rest: str, keyword: str, location: SourceLocation) -> str:
    match = _CONDITION.match(rest)
    condition = match.group("cond").strip() if match else rest
    if not condition:
        raise StructureError(f"Line {location.line}: {keyword} requires a condition")
    return condition


class Structurer:
    """Builds the statement tree with an explicit stack of open blocks."""

    def __init__(self, statements: Iterable[SourceStatement]) -> None:
        self.statements = list(statements)
        self.root = Block(location=SourceLocation(line=1, statement="<program>"))
        self.stack: List[_Frame] = [_Frame(self.root, self.root.body, self.root.location)]

    def structure(self) -> Block:
        for statement in self.statements:
            self._consume(statement)
        if len(self.stack) > 1:
            frame = self.stack[-1]
            raise StructureError(
                f"Line {frame.opening.line}: Missing {_terminator(frame)} for "
                f'{_describe(frame)} block "{frame.opening.statement}"'
            )
        return self.root

    def _consume(self, statement: SourceStatement) -> None:
        location = SourceLocation(line=statement.line, statement=statement.text)
        keyword, rest = _split_keyword(statement.text)
        if keyword == "IF":
            node = Conditional(location=location, clauses=[Clause(_condition(rest, "IF", location), location)])
            self._open(node, node.clauses[0].body, location)
            return
        if keyword == "ELSEIF":
            conditional = self._top_conditional("ELSEIF", location)
            if conditional.has_else:
                raise StructureError(f"Line {location.line}: ELSEIF cannot follow ELSE")
            clause = Clause(_condition(rest, "ELSEIF", location), location)
            conditional.clauses.append(clause)
            self.stack[-1].target = clause.body
            return
        if keyword == "ELSE":
            if rest:
                raise StructureError(f'Line {location.line}: Unexpected text after ELSE: "{rest}"')
            conditional = self._top_conditional("ELSE", location)
            if conditional.has_else:
                raise StructureError(f"Line {location.line}: IF block already has an ELSE branch")
            conditional.has_else = True
            self.stack[-1].target = conditional.else_body
            return
        if keyword == "ENDIF":
            self._top_conditional("ENDIF", location)
            self.stack.pop()
            return
        if keyword in ("DO", "LOOP"):
            self._open_loop(keyword, rest, location)
            return
        if keyword in ("ENDDO", "ENDLOOP"):
            self._close_loop(keyword, location)
            return
        self.stack[-1].target.append(_classify(statement.text, location))

    def _open(self, node: BlockNode, target: List[Node], location: SourceLocation) -> None:
        self.stack[-1].target.append(node)
        self.stack.append(_Frame(node, target, location))

    def _open_loop(self, keyword: str, rest: str, location: SourceLocation) -> None:
        if not rest:
            raise StructureError(
                f"Line {location.line}: {keyword} without a TIMES count is not supported"
            )
        if keyword == "LOOP":
            at_match = _LOOP_AT.match(rest)
            if at_match:
                node: BlockNode = TableLoop(location=location, table=at_match.group("table"), work_area=at_match.group("wa"))
                self._open(node, node.body, location)
                return
            if rest.upper().startswith("AT "):
                raise StructureError(f'Line {location.line}: Invalid LOOP AT syntax: "{location.statement}"')
        times_match = _TIMES.match(rest)
        if not times_match:
            raise StructureError(
                f'Line {location.line}: {keyword} without a TIMES count is not supported: "{location.statement}"'
            )
        loop = CountedLoop(location=location, keyword=keyword, count=times_match.group("count").strip())
        self._open(loop, loop.body, location)

    def _close_loop(self, keyword: str, location: SourceLocation) -> None:
        frame = self.stack[-1]
        expected = "ENDDO" if keyword == "ENDDO" else "ENDLOOP"
        if len(self.stack) == 1 or _terminator(frame) != expected:
            opener = "DO" if keyword == "ENDDO" else "LOOP"
            found = "" if len(self.stack) == 1 else f" (open block: {_describe(frame)} at line {frame.opening.line})"
            raise StructureError(f"Line {location.line}: {keyword} without matching {opener}{found}")
        self.stack.pop()

    def _top_conditional(self, keyword: str, location: SourceLocation) -> Conditional:
        frame = self.stack[-1]
        if len(self.stack) == 1 or not isinstance(frame.node, Conditional):
            found = "" if len(self.stack) == 1 else f" (open block: {_describe(frame)} at line {frame.opening.line})"
            raise StructureError(f"Line {location.line}: {keyword} without matching IF{found}")
        return frame.node


def structure(statements: Iterable[SourceStatement]) -> Block:
    return Structurer(statements).structure()


def parse_program(source: str) -> Block:
    return structure(split_statements(source))
