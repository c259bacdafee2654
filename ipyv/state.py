"""Session state: accumulated V declarations and statements, and the pure program synthesizer.

V has no REPL, so every cell is turned into a complete `module main` program: all declarations submitted so far,
followed by a `fn main()` that replays every statement committed so far plus the new cell's statements.
"""
import re
from dataclasses import dataclass, field
from enum import Enum

__all__ = ["FragmentKind", "KernelStatus", "DECL_KEYWORDS", "split_cell", "classify", "is_expression", "is_complete",
    "render_program", "SessionState"]


class FragmentKind(str, Enum):
    DECLARATION = "declaration"
    STATEMENT = "statement"


class KernelStatus(str, Enum):
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"


DECL_KEYWORDS = ("fn ", "struct ", "interface ", "enum ", "type ", "const ", "const(", "import ", "__global")
_MODIFIERS = ("pub ", "mut ", "static ")
_STMT_KEYWORDS = ("if ", "if(", "for ", "for{", "match ", "return", "mut ", "defer", "unsafe", "go ", "spawn ", "assert ",
    "break", "continue", "goto ", "lock ", "rlock ", "$if", "$for", "{")
_assign_re = re.compile(r":=|(?<![=!<>])=(?!=)|\+\+|--|<<")
_call_re = re.compile(r"^[\w.]+(\[[\w, ]*\])?\(.*\)[!?]?$")


def _skippable(line:str)->bool:
    "Top-level lines that carry no code: blanks, comments, shebangs, and the module clause we emit ourselves."
    return not line or line.startswith(("//", "/*", "#!", "module "))


_string_re = re.compile(r"'(?:\\.|[^'\\])*'|\"(?:\\.|[^\"\\])*\"|`(?:\\.|[^`\\])*`")


def _code_only(text:str)->str:
    "Blank out string literals and line comments so brackets inside them are not counted."
    return "\n".join(_string_re.sub("''", line).split("//", 1)[0] for line in text.splitlines())


def _depth(text:str)->int:
    code = _code_only(text)
    return code.count("{") + code.count("(") - code.count("}") - code.count(")")


def _collect(lines: list[str], start:int)->int:
    "Index just past the block starting at `start`: one line, or up to where its brackets balance."
    depth, i = 0, start
    while i < len(lines):
        depth += _depth(lines[i])
        i += 1
        if depth <= 0: break
    return i


def split_cell(code:str)->list[str]:
    "Split a cell into top-level blocks, dropping blank, comment, shebang and `module` lines between them."
    lines = code.splitlines()
    blocks, i = [], 0
    while i < len(lines):
        line = lines[i].strip()
        if line.startswith("/*"):
            while i < len(lines) and "*/" not in lines[i]: i += 1
            i += 1
            continue
        if _skippable(line):
            i += 1
            continue
        end = _collect(lines, i)
        blocks.append("\n".join(lines[i:end]))
        i = end
    return blocks


def _strip_modifiers(line:str)->str:
    while line.startswith(_MODIFIERS):
        for m in _MODIFIERS: line = line.removeprefix(m)
    return line


def classify(fragment:str)->FragmentKind:
    "Classify `fragment` by its first line: top-level declaration keywords and attributes, or anything else."
    first = _strip_modifiers(fragment.strip().splitlines()[0].strip() if fragment.strip() else "")
    if first.startswith(("[", "@[")) or first.startswith(DECL_KEYWORDS): return FragmentKind.DECLARATION
    return FragmentKind.STATEMENT


def is_expression(fragment:str)->bool:
    "True for a single-line statement that only computes a value, such as `x * 2`."
    text = fragment.strip()
    if not text or "\n" in text or classify(text) is FragmentKind.DECLARATION: return False
    if text.startswith(_STMT_KEYWORDS) or text.endswith(("{", "}", ";")): return False
    if _assign_re.search(_code_only(text)): return False
    return not _call_re.match(text)


def is_complete(code:str)->tuple[str, str]:
    "Return (status, indent) for an is_complete_request, judged by bracket balance."
    depth = _depth(code)
    if depth < 0: return "invalid", ""
    if depth > 0: return "incomplete", "\t" * depth
    return "complete", ""


def _indent(fragment:str)->list[str]: return [f"\t{line}" if line else "" for line in fragment.splitlines()]


def render_program(declarations: list[str], statements: list[str], expression:str|None=None, marker:str|None=None)->str:
    """Render a full V program from accumulated parts.

    Imports are hoisted above the other declarations; statements run inside `fn main()` in order. When `expression`
    is given its value is printed between two `marker` lines so it can be told apart from ordinary output."""
    imports = [d for d in declarations if _strip_modifiers(d.lstrip()).startswith("import ")]
    others = [d for d in declarations if d not in imports]
    out = ["module main", ""]
    if imports: out += [*imports, ""]
    for decl in others: out += [decl, ""]
    body = [line for stmt in statements for line in _indent(stmt)]
    if expression is not None:
        body += [f"\tprintln('{marker}')", f"\tprintln({expression.strip()})", f"\tprintln('{marker}')"]
    if body: out += ["fn main() {", *body, "}"]
    else: out.append("fn main() {}")
    return "\n".join(out) + "\n"


@dataclass
class SessionState:
    "Process-wide cell state for one kernel lifetime; never persisted."
    declarations: list[str] = field(default_factory=list)
    statements: list[str] = field(default_factory=list)
    execution_count: int = 0
    status: KernelStatus = KernelStatus.STARTING

    def next_execution_count(self)->int:
        self.execution_count += 1
        return self.execution_count

    def accumulate(self, fragment:str):
        "Append a declaration; re-declarations are kept and left for the compiler to reject."
        self.declarations.append(fragment)

    def commit(self, statements: list[str]):
        "Record statements whose cell ran successfully so later cells replay them."
        self.statements.extend(statements)

    def synthesize_program(self, new_fragment:str|None, is_declaration: bool=False, expression:str|None=None, marker:str|None=None)->str:
        "Program for one new fragment: declarations are accumulated, statements are appended to the replayed ones."
        pending = []
        if new_fragment is not None:
            if is_declaration: self.accumulate(new_fragment)
            else: pending.append(new_fragment)
        return render_program(self.declarations, [*self.statements, *pending], expression, marker)

    def reset(self):
        self.declarations.clear()
        self.statements.clear()
