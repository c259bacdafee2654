"Execution engine: turns a cell into a V program, builds it with the compiler, runs it and captures its output."
import logging, os, shlex, subprocess, tempfile, threading, uuid
from dataclasses import dataclass
from pathlib import Path
from .debug import env_float
from .state import FragmentKind, SessionState, classify, is_expression, split_cell

log = logging.getLogger("ipyv.engine")

__all__ = ["Success", "CompileError", "RunError", "ExecutionOutcome", "ExecutionEngine", "default_compiler"]

RESET_MAGIC = "%reset"
LAUNCH_FAILED = 127


def _summary(text:str, default:str)->str:
    return next((line.strip() for line in text.splitlines() if line.strip()), default)


@dataclass
class Success:
    stdout:str
    stderr:str
    execution_count:int
    result:str|None = None


@dataclass
class CompileError:
    diagnostics:str
    execution_count:int
    ename = "CompileError"

    def error_content(self)->dict:
        return dict(ename=self.ename, evalue=_summary(self.diagnostics, "compilation failed"), traceback=self.diagnostics.splitlines())


@dataclass
class RunError:
    "Program built but failed at run time; also used for launch failures, timeouts and interrupts."
    stderr:str
    exit_code:int|None
    execution_count:int
    stdout:str = ""
    ename:str = "RuntimeError"

    def error_content(self)->dict:
        evalue = _summary(self.stderr, f"process exited with status {self.exit_code}")
        return dict(ename=self.ename, evalue=evalue, traceback=self.stderr.splitlines())


ExecutionOutcome = Success | CompileError | RunError


@dataclass
class _Proc:
    returncode:int|None
    stdout:str
    stderr:str
    launched: bool = True
    timed_out: bool = False
    interrupted: bool = False


def default_compiler()->list[str]:
    "Compiler command from `IPYV_V`, default `v`."
    return shlex.split(os.environ.get("IPYV_V") or "v")


class ExecutionEngine:
    def __init__(self, state: SessionState|None=None, compiler: list[str]|None=None, timeout:float|None=None):
        "Engine owning `state`; `timeout` bounds each child process (0 or None means no limit)."
        self.state = state if state is not None else SessionState()
        self.compiler = list(compiler) if compiler else default_compiler()
        self.timeout = env_float("IPYV_EXEC_TIMEOUT", 300.0) if timeout is None else timeout
        self.lock = threading.Lock()
        self.proc_lock = threading.RLock()
        self.proc = None
        self.interrupted = threading.Event()
        self.tmpdir = tempfile.TemporaryDirectory(prefix="ipyv-")
        self.workdir = Path(self.tmpdir.name)
        self.marker = f"ipyv-result-{uuid.uuid4().hex}"
        self._version = None

    def execute(self, code:str)->ExecutionOutcome:
        "Run one cell; exactly one outcome per call, never retried."
        with self.lock:
            self.interrupted.clear()
            count = self.state.next_execution_count()
            if code.strip() == RESET_MAGIC:
                self.state.reset()
                return Success("", "", count)
            blocks = [(b, classify(b)) for b in split_cell(code)]
            stmts = [b for b, kind in blocks if kind is FragmentKind.STATEMENT]
            for b, kind in blocks:
                if kind is FragmentKind.DECLARATION: self.state.accumulate(b)
            expression = stmts[0] if len(blocks) == 1 and stmts and is_expression(stmts[0]) else None
            pending = [] if expression is not None else stmts
            source = self.state.synthesize_program("\n".join(pending) if pending else None, False, expression, self.marker)
            log.debug("cell %d: %d declaration(s), %d statement(s)", count, len(blocks) - len(stmts), len(stmts))
            outcome = self._build_and_run(source, count)
            if expression is not None: return self._split_result(outcome)
            if isinstance(outcome, Success): self.state.commit(pending)
            return outcome

    def _split_result(self, outcome: ExecutionOutcome)->ExecutionOutcome:
        "Separate the marked expression value from the replayed output; a failed run keeps only what preceded the marker."
        stdout = getattr(outcome, "stdout", None)
        if stdout is None: return outcome
        head, sep, rest = stdout.partition(self.marker + "\n")
        if not isinstance(outcome, Success):
            outcome.stdout = head
            return outcome
        if not sep: return outcome
        value, _, tail = rest.partition(self.marker + "\n")
        outcome.stdout, outcome.result = head + tail, value.removesuffix("\n")
        return outcome

    def _build_and_run(self, source:str, count:int)->ExecutionOutcome:
        src = self.workdir / f"cell_{count}.v"
        exe = self.workdir / (f"cell_{count}.exe" if os.name == "nt" else f"cell_{count}")
        src.write_text(source, encoding="utf-8")
        try:
            build = self._run([*self.compiler, "-o", str(exe), str(src)])
            if (failed := self._failure(build, count)) is not None: return failed
            if build.returncode != 0: return CompileError(build.stderr or build.stdout, count)
            run = self._run([str(exe)])
            if (failed := self._failure(run, count)) is not None: return failed
            if run.returncode != 0: return RunError(run.stderr, run.returncode, count, stdout=run.stdout)
            return Success(run.stdout, run.stderr, count)
        finally:
            for path in (src, exe): path.unlink(missing_ok=True)

    def _failure(self, proc: _Proc, count:int)->RunError|None:
        "Map launch failures, timeouts and interrupts to a `RunError`."
        if not proc.launched: return RunError(proc.stderr, LAUNCH_FAILED, count)
        if proc.interrupted: return RunError("Execution interrupted", proc.returncode, count, stdout=proc.stdout, ename="KeyboardInterrupt")
        if proc.timed_out:
            msg = f"Execution timed out after {self.timeout:g}s\n{proc.stderr}"
            return RunError(msg, proc.returncode, count, stdout=proc.stdout)
        return None

    def _run(self, cmd: list[str])->_Proc:
        "Run `cmd` to completion with captured output; the child is killed and reaped on every exit path."
        log.debug("run %s", cmd)
        try: proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE, cwd=self.workdir)
        except OSError as e:
            msg = f"Could not start `{cmd[0]}`. Is V installed and in PATH?\nError: {e}"
            log.warning("launch failed: %s", e)
            return _Proc(None, "", msg, launched=False)
        timed_out = False
        with proc:
            with self.proc_lock: self.proc = proc
            try:
                if self.interrupted.is_set(): proc.kill()
                try: out, err = proc.communicate(timeout=self.timeout or None)
                except subprocess.TimeoutExpired:
                    timed_out = True
                    proc.kill()
                    out, err = proc.communicate()
            finally:
                with self.proc_lock: self.proc = None
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()
        decode = lambda b: (b or b"").decode("utf-8", errors="replace")
        return _Proc(proc.returncode, decode(out), decode(err), timed_out=timed_out, interrupted=self.interrupted.is_set())

    def interrupt(self)->bool:
        "Kill the running child process, if any; returns whether one was running."
        self.interrupted.set()
        with self.proc_lock: proc = self.proc
        if proc is None or proc.poll() is not None: return False
        log.info("interrupting child pid=%s", proc.pid)
        try: proc.kill()
        except OSError as e: log.warning("kill failed: %s", e)
        return True

    def version(self)->str:
        "V version string from `v version`, cached; `unknown` when it cannot be run."
        if self._version is None:
            try:
                res = subprocess.run([*self.compiler, "version"], capture_output=True, text=True, timeout=10)
                self._version = res.stdout.strip() if res.returncode == 0 and res.stdout.strip() else "unknown"
            except (OSError, subprocess.TimeoutExpired): self._version = "unknown"
        return self._version

    def close(self):
        "Kill any running child and remove build artefacts."
        self.interrupt()
        self.tmpdir.cleanup()
