import sys, pytest
from pathlib import Path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path: sys.path.insert(0, str(ROOT))
from ipyv.engine import ExecutionEngine
from .kernel_utils import fake_compiler, start_kernel


@pytest.fixture
def engine():
    eng = ExecutionEngine(compiler=fake_compiler(), timeout=30)
    try: yield eng
    finally: eng.close()


@pytest.fixture
def kernel():
    with start_kernel() as (km, kc): yield km, kc
