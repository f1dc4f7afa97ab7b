"""
ASGI entrypoint for deployments.

The FastAPI app lives in `backend/lotty/main.py` and uses imports like
`from lotty.db ...`, which requires `backend/` to be on `PYTHONPATH`
(or the project to be installed with `pip install -e .`).

From the repo root:
  uvicorn main:app --host 0.0.0.0 --port $PORT
"""

from __future__ import annotations

import sys
from pathlib import Path


_ROOT = Path(__file__).resolve().parent
_BACKEND_DIR = _ROOT / "backend"

# Ensure `import lotty...` resolves to `backend/lotty/...`
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from lotty.main import app  # noqa: E402,F401
