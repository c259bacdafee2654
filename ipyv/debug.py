"Debug and configuration switches for ipyv, read from the environment."
import faulthandler, logging, os, signal, sys

def envbool(name: str)->bool:
    v = (os.environ.get(name) or "").strip().lower()
    return v not in ("", "0", "false", "no")

def env_float(name:str, default:float)->float:
    "Return float env var `name`, or `default` on missing/invalid."
    raw = os.environ.get(name)
    if raw is None: return default
    try: return float(raw)
    except ValueError: return default

enabled = envbool("IPYV_DEBUG")
trace_msgs = envbool("IPYV_DEBUG_MSGS")

def setup():
    "Initialize debug infrastructure: logging, faulthandler, SIGUSR1 handler."
    if not enabled: return
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.DEBUG, stream=sys.__stderr__,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    faulthandler.enable(file=sys.__stderr__)
    if hasattr(signal, "SIGUSR1"): faulthandler.register(signal.SIGUSR1, file=sys.__stderr__)

def tlog(log, prefix: str, msg):
    "Log message flow at high level: msg_type, msg_id, execution state."
    if not trace_msgs: return
    h = getattr(msg, "header", None) or {}
    log.warning("%s type=%s id=%s", prefix, h.get("msg_type"), h.get("msg_id"))
