"""Stand-in for the `v` compiler used by the test suite.

`fake_v.py version` prints a version string; `fake_v.py -o OUT SRC` translates a small V subset
(top-level `const`, and `println`, `eprintln`, `:=`, `=`, `sleep`, `exit`, `panic` inside `fn main`)
into an executable Python script at OUT.
"""
import os, re, sys

_tail_op = re.compile(r"(:=|[-+*/%=<>&|,.!])\s*$")
_strings = re.compile(r"'(?:\\.|[^'\\])*'|\"(?:\\.|[^\"\\])*\"")
_assign = re.compile(r"^(?:mut\s+)?([A-Za-z_]\w*)\s*(:=|=)\s*(.*)$")
_call = re.compile(r"^(println|eprintln|sleep|exit|panic)\((.*)\)$")

PRELUDE = '''import sys, time
def _s(v): return ("true" if v else "false") if isinstance(v, bool) else str(v)
def _panic(m):
    sys.stdout.flush()
    sys.stderr.write("V panic: " + _s(m) + "\\n")
    sys.exit(1)
'''


class CompileFailure(Exception):
    def __init__(self, lineno:int, msg:str):
        super().__init__(msg)
        self.lineno = lineno


def py_expr(expr:str, lineno:int)->str:
    "Translate a V expression, rejecting dangling operators and unbalanced brackets."
    expr = expr.strip()
    code = _strings.sub("''", expr)
    if not expr or _tail_op.search(code): raise CompileFailure(lineno, "unexpected eof, expecting expression")
    for o, c in ("()", "[]", "{}"):
        if code.count(o) != code.count(c): raise CompileFailure(lineno, f"unbalanced `{o}`")
    return re.sub(r"\btrue\b", "True", re.sub(r"\bfalse\b", "False", expr))


def statement(line:str, lineno:int)->str:
    if m := _call.match(line):
        fn, arg = m.groups()
        if fn == "println": return f"print(_s({py_expr(arg, lineno)}), flush=True)"
        if fn == "eprintln": return f"print(_s({py_expr(arg, lineno)}), file=sys.stderr, flush=True)"
        if fn == "sleep": return f"time.sleep({py_expr(arg, lineno)})"
        if fn == "exit": return f"sys.stdout.flush(); sys.exit({py_expr(arg, lineno)})"
        return f"_panic({py_expr(arg, lineno)})"
    if m := _assign.match(line):
        name, _, rhs = m.groups()
        return f"{name} = {py_expr(rhs, lineno)}"
    raise CompileFailure(lineno, f"unsupported statement `{line}`")


def translate(source:str)->str:
    out, in_main, in_const, lineno = [PRELUDE], False, False, 0
    for lineno, raw in enumerate(source.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("//"): continue
        if in_main:
            if raw == "}": in_main = False
            else: out.append(statement(line, lineno))
            continue
        if in_const:
            if line == ")": in_const = False
            else: out.append(const(line, lineno))
            continue
        if line.startswith(("module ", "import ")) or line == "fn main() {}": continue
        if line == "fn main() {": in_main = True
        elif line in ("const (", "const("): in_const = True
        elif line.startswith("const "): out.append(const(line[6:], lineno))
        else: raise CompileFailure(lineno, f"unsupported declaration `{line}`")
    if in_main or in_const: raise CompileFailure(lineno, "unexpected eof, expecting `}`")
    return "\n".join(out) + "\n"


def const(text:str, lineno:int)->str:
    name, sep, rhs = text.partition("=")
    if not sep or not name.strip().isidentifier(): raise CompileFailure(lineno, "invalid const declaration")
    return f"{name.strip()} = {py_expr(rhs, lineno)}"


def main(argv:list[str])->int:
    if argv[:1] == ["version"]:
        print("V 0.4.fake")
        return 0
    if len(argv) != 3 or argv[0] != "-o":
        print("usage: fake_v.py -o OUT SRC", file=sys.stderr)
        return 2
    out, src = argv[1], argv[2]
    with open(src, encoding="utf-8") as f: source = f.read()
    try: script = translate(source)
    except CompileFailure as e:
        print(f"{src}:{e.lineno}:1: error: {e}", file=sys.stderr)
        return 1
    with open(out, "w", encoding="utf-8") as f: f.write(f"#!{sys.executable}\n{script}")
    os.chmod(out, 0o755)
    return 0


if __name__ == "__main__": sys.exit(main(sys.argv[1:]))
