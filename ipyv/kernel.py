import json, logging, signal, sys, threading, traceback
from contextlib import contextmanager
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version
from fastcore.basics import store_attr
import zmq
from .engine import CompileError, ExecutionEngine, RunError, Success
from .state import KernelStatus, SessionState, is_complete
from .wire import AuthenticationError, MalformedMessageError, Message, WireCodec
from . import debug as _dbg_mod

log = logging.getLogger("ipyv.kernel")
_debug = _dbg_mod.enabled
_dbg_lock = threading.Lock()
def dbg(*args, **kw):
    if _debug:
        with _dbg_lock: print("[ipyv]", *args, **kw, file=sys.__stderr__, flush=True)

def _install_thread_excepthook(kernel: "VKernel"):
    prev = threading.excepthook
    def hook(args):
        try: prev(args)
        except Exception: pass
        name = getattr(args.thread, "name", "")
        if name not in {"heartbeat-thread", "control-router"}: return
        log.error("Critical thread crashed: %s", name, exc_info=(args.exc_type, args.exc_value, args.exc_traceback))
        kernel.shutdown_event.set()
    threading.excepthook = hook
    return prev


@dataclass
class ConnectionInfo:
    transport:str
    ip:str
    shell_port:int
    iopub_port:int
    stdin_port:int
    control_port:int
    hb_port:int
    key:str
    signature_scheme:str

    @classmethod
    def from_file(cls, path:str)->"ConnectionInfo":
        "Load connection info from JSON connection file at `path`."
        with open(path, encoding="utf-8") as f: data = json.load(f)
        return cls(transport=data["transport"], ip=data["ip"], shell_port=int(data["shell_port"]),
            iopub_port=int(data["iopub_port"]), stdin_port=int(data["stdin_port"]), control_port=int(data["control_port"]),
            hb_port=int(data["hb_port"]), key=data.get("key", ""), signature_scheme=data.get("signature_scheme", "hmac-sha256"))

    def addr(self, port:int)->str: return f"{self.transport}://{self.ip}:{port}"


shell_required = dict(execute_request=("code",), is_complete_request=("code",))
missing_defaults = dict(is_complete_request={"indent": ""}, history_request={"history": []}, comm_info_request={"comms": {}})
ignored_msgs = {"comm_open", "comm_msg", "comm_close"}


def recv_msg(codec: WireCodec, sock: zmq.Socket, label:str)->Message|None:
    "Receive and decode one message from `sock`; unauthenticated or malformed messages are logged and dropped."
    frames = sock.recv_multipart()
    try: msg = codec.decode(frames)
    except AuthenticationError as e:
        log.warning("%s: dropping unauthenticated message: %s", label, e)
        return None
    except MalformedMessageError as e:
        log.warning("%s: dropping malformed message: %s", label, e)
        return None
    dbg(f"{label} RECV {msg.msg_type} id={msg.short_id()}")
    _dbg_mod.tlog(log, f"{label} recv", msg)
    return msg


class HeartbeatThread(threading.Thread):
    def __init__(self, context: zmq.Context, addr:str):
        "Initialize heartbeat thread bound to `addr`."
        super().__init__(daemon=True, name="heartbeat-thread")
        store_attr()
        self.stop_event = threading.Event()
        self.ready = threading.Event()

    def run(self):
        "Echo heartbeat requests verbatim on a REP socket until stopped."
        sock = None
        try:
            sock = self.context.socket(zmq.REP)
            sock.linger = 0
            sock.bind(self.addr)
            self.ready.set()
            poller = zmq.Poller()
            poller.register(sock, zmq.POLLIN)
            while not self.stop_event.is_set():
                events = dict(poller.poll(100))
                if sock in events and events[sock] & zmq.POLLIN: sock.send_multipart(sock.recv_multipart())
        finally:
            if sock is not None: sock.close(0)

    def stop(self): self.stop_event.set()


class ControlThread(threading.Thread):
    "ROUTER loop for the control channel, served while the shell loop is busy running a cell."

    def __init__(self, kernel: "VKernel", addr:str):
        super().__init__(daemon=True, name="control-router")
        store_attr()
        self.stop_event = threading.Event()
        self.ready = threading.Event()
        self.handlers = dict(shutdown_request=self.handle_shutdown, interrupt_request=self.handle_interrupt,
            kernel_info_request=self.handle_kernel_info)

    def run(self):
        sock = None
        try:
            sock = self.kernel.context.socket(zmq.ROUTER)
            sock.linger = 0
            if hasattr(zmq, "ROUTER_HANDOVER"): sock.router_handover = 1
            sock.bind(self.addr)
            self.ready.set()
            poller = zmq.Poller()
            poller.register(sock, zmq.POLLIN)
            while not self.stop_event.is_set():
                events = dict(poller.poll(100))
                if sock not in events: continue
                msg = recv_msg(self.kernel.codec, sock, "control")
                if msg is not None: self.dispatch(sock, msg)
        finally:
            if sock is not None: sock.close(0)

    def dispatch(self, sock: zmq.Socket, msg: Message):
        handler = self.handlers.get(msg.msg_type)
        if handler is not None:
            handler(sock, msg)
            return
        if msg.msg_type.endswith("_request"): self.kernel.send_reply(sock, msg, msg.msg_type.replace("_request", "_reply"), {})
        else: log.warning("Unhandled control message: %s", msg.msg_type)

    def handle_shutdown(self, sock: zmq.Socket, msg: Message):
        self.kernel.send_reply(sock, msg, "shutdown_reply", self.kernel.shutdown_content(msg))
        self.kernel.request_shutdown()

    def handle_interrupt(self, sock: zmq.Socket, msg: Message):
        "Acknowledge interrupt_request; a running build or program is killed."
        killed = self.kernel.engine.interrupt()
        dbg(f"INTERRUPT killed={killed}")
        self.kernel.send_reply(sock, msg, "interrupt_reply", {"status": "ok"})

    def handle_kernel_info(self, sock: zmq.Socket, msg: Message):
        self.kernel.send_reply(sock, msg, "kernel_info_reply", self.kernel.kernel_info_content())

    def stop(self): self.stop_event.set()


class IOPub:
    "PUB socket wrapper; `iopub.<msg_type>(parent, **content)` broadcasts that message type."

    def __init__(self, socket: zmq.Socket, codec: WireCodec): store_attr()

    def send(self, msg_type:str, parent: Message|None, content: dict|None=None, **kwargs)->Message:
        "Broadcast a message with an explicit `msg_type`; fire-and-forget."
        if kwargs: content = dict(content or {}) | kwargs
        msg = self.codec.broadcast(msg_type, content, parent)
        if msg_type == "status": dbg(f"iopub SEND status state={msg.content.get('execution_state')}")
        else: dbg(f"iopub SEND {msg_type}")
        self.socket.send_multipart(self.codec.encode(msg))
        return msg

    def __getattr__(self, name:str):
        "Return a callable that broadcasts the named IOPub message type."
        if name.startswith('_'): raise AttributeError(name)
        def _send(parent: Message|None, content: dict|None=None, **kwargs): return self.send(name, parent, content, **kwargs)
        _send.__name__ = name
        return _send


class VKernel:
    def __init__(self, connection_file:str, engine: ExecutionEngine|None=None):
        "Initialize kernel codec, engine and threads; sockets are bound in `start`."
        self.connection = ConnectionInfo.from_file(connection_file)
        self.codec = WireCodec(self.connection.key, self.connection.signature_scheme)
        self.engine = engine if engine is not None else ExecutionEngine(SessionState())
        self.context = zmq.Context.instance()
        self.shell_socket = self.stdin_socket = self.iopub = None
        self.hb = HeartbeatThread(self.context, self.connection.addr(self.connection.hb_port))
        self.control = ControlThread(self, self.connection.addr(self.connection.control_port))
        self.shutdown_event = threading.Event()
        self.shell_handlers = dict(execute_request=self.handle_execute, kernel_info_request=self.handle_kernel_info,
            connect_request=self.handle_connect, is_complete_request=self.handle_is_complete,
            comm_info_request=self.handle_comm_info, history_request=self.handle_history, shutdown_request=self.handle_shutdown)

    @property
    def state(self)->SessionState: return self.engine.state

    def bind(self, sock_type:int, port:int)->zmq.Socket:
        "Bind a `sock_type` socket to `port`."
        sock = self.context.socket(sock_type)
        if sock_type == zmq.ROUTER and hasattr(zmq, "ROUTER_HANDOVER"): sock.router_handover = 1
        sock.linger = 0
        sock.bind(self.connection.addr(port))
        return sock

    def start(self):
        "Bind channels, start heartbeat and control threads, and serve the shell channel until shutdown."
        _dbg_mod.setup()
        dbg("kernel starting...")
        prev_hook = _install_thread_excepthook(self)
        prev_sigint = signal.getsignal(signal.SIGINT)
        signal.signal(signal.SIGINT, self.handle_sigint)
        try:
            self.iopub = IOPub(self.bind(zmq.PUB, self.connection.iopub_port), self.codec)
            self.shell_socket = self.bind(zmq.ROUTER, self.connection.shell_port)
            self.stdin_socket = self.bind(zmq.ROUTER, self.connection.stdin_port)
            self.hb.start()
            self.control.start()
            self.hb.ready.wait()
            self.control.ready.wait()
            self.set_status(KernelStatus.STARTING, None)
            self.set_status(KernelStatus.IDLE, None)
            dbg("kernel ready")
            self.serve()
        finally:
            threading.excepthook = prev_hook
            signal.signal(signal.SIGINT, prev_sigint)
            self.teardown()

    def serve(self):
        "Kernel loop: handle shell requests one at a time; socket errors propagate and end the process."
        poller = zmq.Poller()
        poller.register(self.shell_socket, zmq.POLLIN)
        while not self.shutdown_event.is_set():
            events = dict(poller.poll(100))
            if self.shell_socket not in events: continue
            msg = recv_msg(self.codec, self.shell_socket, "shell")
            if msg is not None: self.handle_shell_msg(msg)

    def teardown(self):
        if self.iopub is not None:
            try: self.set_status(KernelStatus.DEAD, None)
            except zmq.ZMQError as e: log.warning("Could not publish dead status: %s", e)
        self.control.stop()
        self.hb.stop()
        self.control.join(timeout=1)
        self.hb.join(timeout=1)
        if self.iopub is not None: self.iopub.socket.close(linger=1000)
        for sock in (self.shell_socket, self.stdin_socket):
            if sock is not None: sock.close(0)
        self.engine.close()
        dbg("kernel terminated")

    def set_status(self, status: KernelStatus, parent: Message|None):
        "Record `status` in the session and broadcast it."
        self.state.status = status
        if _dbg_mod.trace_msgs and parent: _dbg_mod.tlog(log, f"iopub status={status.value}", parent)
        self.iopub.status(parent, execution_state=status.value)

    @contextmanager
    def busy_idle(self, parent: Message|None):
        "Send busy before work and idle after."
        self.set_status(KernelStatus.BUSY, parent)
        try: yield
        finally: self.set_status(KernelStatus.IDLE, parent)

    def send_reply(self, sock: zmq.Socket, parent: Message, msg_type:str, content: dict):
        dbg(f"REPLY {msg_type} id={parent.short_id()}")
        sock.send_multipart(self.codec.encode(self.codec.reply(parent, msg_type, content)))

    def handle_shell_msg(self, msg: Message):
        "Dispatch one shell message; handler failures become error replies instead of killing the kernel."
        msg_type = msg.msg_type
        if msg_type in ignored_msgs:
            dbg(f"IGNORE {msg_type}")
            return
        handler = self.shell_handlers.get(msg_type)
        if handler is None:
            if msg_type.endswith("_request"): self.send_reply(self.shell_socket, msg, msg_type.replace("_request", "_reply"), {})
            else: log.warning("Unhandled shell message: %s", msg_type)
            return
        missing = [k for k in shell_required.get(msg_type, ()) if k not in msg.content]
        if missing:
            if msg_type == "execute_request":
                with self.engine.lock: self.state.next_execution_count()
            self._send_error_reply(msg, "MissingField", f"missing required fields: {', '.join(missing)}", [])
            return
        try: handler(msg)
        except Exception as exc:
            log.warning("Internal error in %s handler", msg_type, exc_info=exc)
            tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
            self._send_error_reply(msg, type(exc).__name__, str(exc), tb)

    def _send_error_reply(self, msg: Message, ename:str, evalue:str, tb: list[str]):
        reply_type = msg.msg_type.replace("_request", "_reply")
        reply = dict(status="error", ename=ename, evalue=evalue, traceback=tb)
        if msg.msg_type != "execute_request":
            self.send_reply(self.shell_socket, msg, reply_type, reply | missing_defaults.get(msg.msg_type, {}))
            return
        reply |= dict(execution_count=self.state.execution_count, user_expressions={}, payload=[])
        with self.busy_idle(msg): self.iopub.error(msg, ename=ename, evalue=evalue, traceback=tb)
        self.send_reply(self.shell_socket, msg, reply_type, reply)

    def handle_execute(self, msg: Message):
        "Busy, execute_input, outputs, idle, then the reply: front ends take idle as the end of output."
        self.set_status(KernelStatus.BUSY, msg)
        try: reply = self._run_cell(msg)
        except Exception as exc:
            log.warning("Internal error executing cell", exc_info=exc)
            tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
            self.iopub.error(msg, ename=type(exc).__name__, evalue=str(exc), traceback=tb)
            reply = dict(status="error", ename=type(exc).__name__, evalue=str(exc), traceback=tb,
                execution_count=self.state.execution_count, user_expressions={}, payload=[])
        finally: self.set_status(KernelStatus.IDLE, msg)
        self.send_reply(self.shell_socket, msg, "execute_reply", reply)

    def _run_cell(self, msg: Message)->dict:
        code = msg.content.get("code", "")
        silent = bool(msg.content.get("silent", False))
        if not silent: self.iopub.execute_input(msg, code=code, execution_count=self.state.execution_count + 1)
        dbg(f"EXEC id={msg.short_id()} code={code[:30]!r}...")
        outcome = self.engine.execute(code)
        count = outcome.execution_count
        stdout = getattr(outcome, "stdout", "")
        if not silent and stdout: self.iopub.stream(msg, name="stdout", text=stdout)
        if isinstance(outcome, Success):
            if not silent:
                if outcome.stderr: self.iopub.stream(msg, name="stderr", text=outcome.stderr)
                if outcome.result is not None:
                    self.iopub.execute_result(msg, execution_count=count, data={"text/plain": outcome.result}, metadata={})
            return dict(status="ok", execution_count=count, user_expressions={}, payload=[])
        error = outcome.error_content()
        if not silent: self.iopub.error(msg, **error)
        return dict(status="error", execution_count=count, user_expressions={}, payload=[], **error)

    def handle_kernel_info(self, msg: Message):
        with self.busy_idle(msg): content = self.kernel_info_content()
        self.send_reply(self.shell_socket, msg, "kernel_info_reply", content)

    def handle_connect(self, msg: Message):
        c = self.connection
        content = dict(shell_port=c.shell_port, iopub_port=c.iopub_port, stdin_port=c.stdin_port, control_port=c.control_port, hb_port=c.hb_port)
        self.send_reply(self.shell_socket, msg, "connect_reply", content)

    def handle_is_complete(self, msg: Message):
        status, indent = is_complete(msg.content["code"])
        content = dict(status=status, indent=indent) if status == "incomplete" else dict(status=status)
        self.send_reply(self.shell_socket, msg, "is_complete_reply", content)

    def handle_comm_info(self, msg: Message): self.send_reply(self.shell_socket, msg, "comm_info_reply", dict(status="ok", comms={}))

    def handle_history(self, msg: Message): self.send_reply(self.shell_socket, msg, "history_reply", dict(status="ok", history=[]))

    def handle_shutdown(self, msg: Message):
        self.send_reply(self.shell_socket, msg, "shutdown_reply", self.shutdown_content(msg))
        self.request_shutdown()

    def shutdown_content(self, msg: Message)->dict: return {"status": "ok", "restart": bool(msg.content.get("restart", False))}

    def request_shutdown(self):
        "Stop the kernel loop after the current request; a running child process is killed."
        self.shutdown_event.set()
        self.engine.interrupt()

    def handle_sigint(self, signum, frame):
        "Handle SIGINT by killing the running child process."
        self.engine.interrupt()

    def kernel_info_content(self)->dict:
        "Build kernel_info_reply content."
        try: impl_version = version("ipyv")
        except PackageNotFoundError: impl_version = "0.0.0+local"
        return dict(status="ok", protocol_version="5.3", implementation="ipyv", implementation_version=impl_version,
            language_info=dict(name="v", version=self.engine.version(), mimetype="text/x-vlang", file_extension=".v",
                pygments_lexer="v", codemirror_mode="clike"),
            banner="V kernel: cells accumulate into one program that is rebuilt and rerun on every execution",
            help_links=[dict(text="V Documentation", url="https://docs.vlang.io/")])


def run_kernel(connection_file:str):
    "Run kernel given a connection file path."
    kernel = VKernel(connection_file)
    kernel.start()
