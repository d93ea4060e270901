import os
import sys
import tempfile
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Keep tests away from the real data blob and the configured model.
os.environ.setdefault("FINISH_OS_DATA_DIR", tempfile.mkdtemp(prefix="finish_os_test_"))
os.environ["FINISH_OS_LLM_PROFILE"] = "rule_based"
