from __future__ import annotations
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from lexer import ABAPError
from parser import evaluate, evaluate_condition
from structurer import (
    Block,
    Conditional,
    CountedLoop,
    Leaf,
    Node,
    SourceLocation,
    StatementKind,
    StructureError,
    TableLoop,
    parse_program,
    split_list,
)
from typesystem import (
    KIND_NUMERIC,
    NUMBER,
    TypeDescriptor,
    Value,
    build_descriptor,
    coerce,
    coerce_element,
    coerce_table,
    default_value,
    format_number,
    number,
    to_text,
)


DEFAULT_MAX_ITERATIONS = 100_000

SY_INDEX = "sy-index"
SY_TABIX = "sy-tabix"
SYSTEM_FIELDS = (SY_INDEX, SY_TABIX)

_IDENT = re.compile(r"^[A-Za-z_][\w-]*$")
_ADD = re.compile(r"^(?P<amount>.+?)\s+TO\s+(?P<target>[A-Za-z_][\w-]*)$", re.IGNORECASE)
_SUBTRACT = re.compile(r"^(?P<amount>.+?)\s+FROM\s+(?P<target>[A-Za-z_][\w-]*)$", re.IGNORECASE)
_APPEND = re.compile(r"^(?P<expr>.+?)\s+TO\s+(?P<table>[A-Za-z_][\w-]*)$", re.IGNORECASE)
_ASSIGN = re.compile(r"^(?P<target>[A-Za-z_][\w-]*)\s*=\s*(?P<expr>.+)$")


class ABAPRuntimeError(ABAPError):
    """Raised for statement-level faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule


class IterationLimitError(ABAPRuntimeError):
    """Raised when a run exceeds its loop iteration budget; aborts the run."""


@dataclass
class Slot:
    descriptor: TypeDescriptor
    value: Any


@dataclass
class Environment:
    values: Dict[str, Slot] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in SYSTEM_FIELDS:
            if name not in self.values:
                descriptor = TypeDescriptor("i")
                self.values[name] = Slot(descriptor, default_value(descriptor))

    @staticmethod
    def _key(name: str) -> str:
        return name.lower()

    def declare(self, name: str, slot: Slot) -> None:
        key = self._key(name)
        if key in self.values:
            raise ABAPRuntimeError(f'Variable "{name}" is already declared', rule="DATA")
        self.values[key] = slot

    def get(self, name: str) -> Slot:
        slot = self.values.get(self._key(name))
        if slot is None:
            raise ABAPRuntimeError(f'Variable "{name}" is not declared', rule="IDENT")
        return slot

    def get_optional(self, name: str) -> Optional[Slot]:
        return self.values.get(self._key(name))

    def has(self, name: str) -> bool:
        return self._key(name) in self.values

    def snapshot(self) -> Dict[str, str]:
        def _render(slot: Slot) -> str:
            if slot.descriptor.is_table:
                return f"{slot.descriptor.describe()}:[{len(slot.value)}]"
            if slot.descriptor.kind == KIND_NUMERIC:
                rendered = format_number(slot.value)
            else:
                rendered = str(slot.value)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{slot.descriptor.describe()}:{rendered}"

        return {k: _render(v) for k, v in self.values.items()}


class OutputBuffer:
    def __init__(self) -> None:
        self.lines: List[str] = []

    def new_line(self) -> None:
        self.lines.append("")

    def write(self, text: str) -> None:
        if not self.lines:
            self.lines.append("")
        current = self.lines[-1]
        if current and not current.endswith(" "):
            current += " "
        self.lines[-1] = current + text

    def render(self) -> str:
        lines = list(self.lines)
        if lines and lines[-1] == "":
            lines.pop()
        return "\n".join(line.rstrip() for line in lines)


@dataclass
class InterpreterConfig:
    verbose: bool = False
    max_iterations: int = DEFAULT_MAX_ITERATIONS


@dataclass
class ExecutionResult:
    output: str
    diagnostics: List[str]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    rule: str
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.errors: List[Dict[str, Any]] = []

    def record(
        self,
        *,
        rule: str,
        location: Optional[SourceLocation],
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            rule=rule,
            source_location=location,
            statement=location.statement if location else None,
            env_snapshot=env_snapshot,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    def record_error(self, error: ABAPError, location: Optional[SourceLocation]) -> Dict[str, Any]:
        rule = error.rule if isinstance(error, ABAPRuntimeError) else None
        record: Dict[str, Any] = {
            "type": error.__class__.__name__,
            "message": error.message if isinstance(error, ABAPRuntimeError) else str(error),
            "rule": rule or "runtime",
            "failing_step_index": self.entries[-1].step_index if self.entries else None,
        }
        if location is not None:
            record["line"] = location.line
        self.errors.append(record)
        return record

    def to_json(self) -> str:
        steps: List[Dict[str, Any]] = []
        for entry in self.entries:
            step: Dict[str, Any] = {"step_index": entry.step_index, "state_id": entry.state_id, "rule": entry.rule}
            if entry.source_location:
                step["source_location"] = {
                    "line": entry.source_location.line,
                    "statement": entry.source_location.statement,
                }
            if entry.env_snapshot is not None:
                step["env_snapshot"] = entry.env_snapshot
            steps.append(step)
        return json.dumps({"steps": steps, "errors": self.errors}, indent=2)


StatementHandler = Callable[[Leaf], None]
# Generator that runs leaves itself and yields a walker per nested block.
Walker = Iterator[Any]


class Interpreter:
    def __init__(self, config: Optional[InterpreterConfig] = None) -> None:
        self.config = config or InterpreterConfig()
        self.handlers: Dict[StatementKind, StatementHandler] = {
            StatementKind.DATA: self._execute_data,
            StatementKind.WRITE: self._execute_write,
            StatementKind.ADD: self._execute_add,
            StatementKind.SUBTRACT: self._execute_subtract,
            StatementKind.CLEAR: self._execute_clear,
            StatementKind.APPEND: self._execute_append,
            StatementKind.ASSIGNMENT: self._execute_assignment,
            StatementKind.UNKNOWN: self._execute_unknown,
        }
        self._reset()

    def _reset(self) -> None:
        self.env = Environment()
        self.output = OutputBuffer()
        self.diagnostics: List[str] = []
        self.logger = StateLogger(verbose=self.config.verbose)
        self.iterations_left = self.config.max_iterations

    def execute(self, source: str) -> ExecutionResult:
        try:
            program = parse_program(source)
        except StructureError as error:
            return ExecutionResult(output="", diagnostics=[str(error)])
        return self.run(program)

    def run(self, program: Block) -> ExecutionResult:
        self._reset()
        try:
            self._execute_block(program.body)
        except IterationLimitError as error:
            self._report(error, error.location)
        return ExecutionResult(output=self.output.render(), diagnostics=list(self.diagnostics))

    def _execute_block(self, nodes: List[Node]) -> None:
        """Run a statement list off an explicit stack of walkers.

        Each walker is a generator that runs its leaves directly and yields a
        new walker for every nested block, so nesting depth never reaches the
        Python call stack.
        """
        stack: List[Walker] = [self._walk_block(nodes)]
        try:
            while stack:
                try:
                    child = next(stack[-1])
                except StopIteration:
                    stack.pop()
                    continue
                stack.append(child)
        finally:
            # Innermost walker closes first; loops restore their system fields on close.
            while stack:
                stack.pop().close()

    def _walk_block(self, nodes: List[Node]) -> Walker:
        for node in nodes:
            if isinstance(node, Leaf):
                self._execute_leaf(node)
            elif isinstance(node, Conditional):
                yield self._execute_conditional(node)
            elif isinstance(node, CountedLoop):
                yield self._execute_counted_loop(node)
            elif isinstance(node, TableLoop):
                yield self._execute_table_loop(node)
            else:
                raise ABAPRuntimeError(f"Unsupported node {node.__class__.__name__}", location=node.location)

    def _execute_leaf(self, leaf: Leaf) -> None:
        self._log_step(rule=leaf.kind.value, location=leaf.location)
        try:
            self.handlers[leaf.kind](leaf)
        except IterationLimitError:
            raise
        except ABAPError as error:
            self._report(error, leaf.location)

    def _report(self, error: ABAPError, location: Optional[SourceLocation]) -> None:
        message = self.logger.record_error(error, location)["message"]
        if location is not None:
            message = f"Line {location.line}: {message}"
        self.diagnostics.append(message)

    # ---- Statements ----

    def _execute_data(self, leaf: Leaf) -> None:
        for declaration in leaf.declarations:
            name = declaration.name
            if self.env.has(name):
                raise ABAPRuntimeError(f'Variable "{name}" is already declared', rule="DATA")
            descriptor = build_descriptor(
                declaration.type_name,
                name=name,
                table=declaration.table,
                length=declaration.length,
                decimals=declaration.decimals,
            )
            if descriptor.is_table:
                value = self._table_initializer(descriptor, name, declaration.value)
            elif declaration.value is not None:
                value = coerce(descriptor, evaluate(declaration.value, self.env), name=name)
            else:
                value = default_value(descriptor)
            # Only a fully validated and coerced slot becomes visible.
            self.env.declare(name, Slot(descriptor, value))

    def _table_initializer(self, descriptor: TypeDescriptor, name: str, source: Optional[str]) -> List[Value]:
        if source is None:
            return default_value(descriptor)
        source = source.strip()
        if not _IDENT.match(source):
            raise ABAPRuntimeError(f"VALUE for table {name.upper()} must name a declared table", rule="DATA")
        slot = self.env.get(source)
        if not slot.descriptor.is_table:
            raise ABAPRuntimeError(f"VALUE for table {name.upper()} must name a declared table", rule="DATA")
        return coerce_table(descriptor, list(slot.value), name=name)

    def _execute_write(self, leaf: Leaf) -> None:
        if not leaf.body:
            raise ABAPRuntimeError("WRITE needs content", rule="WRITE")
        pending: List[Tuple[bool, Optional[str]]] = []
        for segment in split_list(leaf.body):
            newline = segment.startswith("/")
            if newline:
                segment = segment[1:].strip()
            text = to_text(evaluate(segment, self.env)) if segment else None
            pending.append((newline, text))
        # Output is committed only once every segment evaluated.
        for newline, text in pending:
            if newline:
                self.output.new_line()
            if text is not None:
                self.output.write(text)

    def _execute_add(self, leaf: Leaf) -> None:
        match = _ADD.match(leaf.body)
        if not match:
            raise ABAPRuntimeError(f'Invalid ADD syntax: "{leaf.location.statement}"', rule="ADD")
        self._mutate_numeric("ADD", match.group("target"), match.group("amount"), 1.0)

    def _execute_subtract(self, leaf: Leaf) -> None:
        match = _SUBTRACT.match(leaf.body)
        if not match:
            raise ABAPRuntimeError(f'Invalid SUBTRACT syntax: "{leaf.location.statement}"', rule="SUBTRACT")
        self._mutate_numeric("SUBTRACT", match.group("target"), match.group("amount"), -1.0)

    def _mutate_numeric(self, rule: str, target: str, amount_text: str, sign: float) -> None:
        slot = self.env.get(target)
        if slot.descriptor.is_table or slot.descriptor.kind != KIND_NUMERIC:
            raise ABAPRuntimeError(f"{rule} only supports numeric variables", rule=rule)
        amount = coerce(slot.descriptor, evaluate(amount_text, self.env), name=target)
        result = float(slot.value) + sign * float(amount)
        slot.value = coerce(slot.descriptor, number(result), name=target)

    def _execute_clear(self, leaf: Leaf) -> None:
        names = split_list(leaf.body)
        if not names:
            raise ABAPRuntimeError("CLEAR needs a variable", rule="CLEAR")
        slots: List[Slot] = []
        for name in names:
            if not _IDENT.match(name):
                raise ABAPRuntimeError(f'Invalid CLEAR syntax: "{leaf.location.statement}"', rule="CLEAR")
            slots.append(self.env.get(name))
        for slot in slots:
            slot.value = default_value(slot.descriptor)

    def _execute_append(self, leaf: Leaf) -> None:
        match = _APPEND.match(leaf.body)
        if not match:
            raise ABAPRuntimeError(f'Invalid APPEND syntax: "{leaf.location.statement}"', rule="APPEND")
        table_name = match.group("table")
        slot = self.env.get(table_name)
        if not slot.descriptor.is_table:
            raise ABAPRuntimeError(f"APPEND target {table_name.upper()} is not an internal table", rule="APPEND")
        element = coerce_element(slot.descriptor, evaluate(match.group("expr"), self.env), name=table_name)
        slot.value.append(element)

    def _execute_assignment(self, leaf: Leaf) -> None:
        match = _ASSIGN.match(leaf.body)
        if not match:
            raise ABAPRuntimeError(f'Could not interpret the assignment: "{leaf.body}"', rule="ASSIGN")
        target = match.group("target")
        slot = self.env.get(target)
        if slot.descriptor.is_table:
            raise ABAPRuntimeError(f"Table {target.upper()} cannot be assigned; use APPEND", rule="ASSIGN")
        slot.value = coerce(slot.descriptor, evaluate(match.group("expr"), self.env), name=target)

    def _execute_unknown(self, leaf: Leaf) -> None:
        raise ABAPRuntimeError(f'Unsupported statement: "{leaf.body}"', rule="UNKNOWN")

    # ---- Control flow ----

    def _execute_conditional(self, node: Conditional) -> Walker:
        chosen: Optional[List[Node]] = None
        for clause in node.clauses:
            self._log_step(rule="IF", location=clause.location)
            try:
                matched = evaluate_condition(clause.condition, self.env)
            except ABAPError as error:
                self._report(error, clause.location)
                return
            if matched:
                chosen = clause.body
                break
        else:
            if node.has_else:
                chosen = node.else_body
        if chosen is not None:
            yield self._walk_block(chosen)

    def _execute_counted_loop(self, node: CountedLoop) -> Walker:
        self._log_step(rule=node.keyword, location=node.location)
        try:
            count = self._loop_count(node)
        except ABAPError as error:
            self._report(error, node.location)
            return
        self._consume_iterations(count, node.location)
        index_slot = self.env.get(SY_INDEX)
        saved = index_slot.value
        try:
            for iteration in range(1, count + 1):
                index_slot.value = number(iteration).value
                yield self._walk_block(node.body)
        finally:
            index_slot.value = saved

    def _loop_count(self, node: CountedLoop) -> int:
        result = evaluate(node.count, self.env)
        if result.type != NUMBER:
            raise ABAPRuntimeError(f"{node.keyword} count must be numeric", rule=node.keyword)
        count = float(result.value)
        if not count.is_integer() or count < 0:
            raise ABAPRuntimeError(
                f"{node.keyword} count must be a non-negative integer, got {to_text(result)}",
                rule=node.keyword,
            )
        return int(count)

    def _execute_table_loop(self, node: TableLoop) -> Walker:
        self._log_step(rule="LOOP AT", location=node.location)
        try:
            table = self.env.get(node.table)
            if not table.descriptor.is_table:
                raise ABAPRuntimeError(f"LOOP AT requires an internal table, {node.table.upper()} is not one", rule="LOOP")
            work_area = self.env.get(node.work_area)
            if work_area.descriptor.is_table:
                raise ABAPRuntimeError(f"Work area {node.work_area.upper()} cannot be a table", rule="LOOP")
            if work_area.descriptor.kind != table.descriptor.kind:
                raise ABAPRuntimeError(
                    f"Work area {node.work_area.upper()} ({work_area.descriptor.describe()}) does not match "
                    f"{node.table.upper()} ({table.descriptor.describe()})",
                    rule="LOOP",
                )
        except ABAPError as error:
            self._report(error, node.location)
            return
        # Rows are read from a snapshot taken at loop entry.
        rows = list(table.value)
        self._consume_iterations(len(rows), node.location)
        tabix_slot = self.env.get(SY_TABIX)
        saved = tabix_slot.value
        try:
            for row_index, row in enumerate(rows, start=1):
                tabix_slot.value = number(row_index).value
                try:
                    work_area.value = coerce(work_area.descriptor, row, name=node.work_area)
                except ABAPError as error:
                    self._report(error, node.location)
                    return
                yield self._walk_block(node.body)
        finally:
            tabix_slot.value = saved

    def _consume_iterations(self, count: int, location: SourceLocation) -> None:
        if count > self.iterations_left:
            raise IterationLimitError(
                f"Too many iterations: the run is limited to {self.config.max_iterations} loop iterations",
                location=location,
                rule="LOOP",
            )
        self.iterations_left -= count

    def _log_step(self, *, rule: str, location: Optional[SourceLocation]) -> None:
        env_snapshot = self.env.snapshot() if self.config.verbose else None
        self.logger.record(rule=rule, location=location, env_snapshot=env_snapshot)


def execute(source: str, config: Optional[InterpreterConfig] = None) -> ExecutionResult:
    """Run one ABAP program from scratch and collect its output and diagnostics."""
    return Interpreter(config).execute(source)
