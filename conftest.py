"""リポジトリ直下を import パスに入れ、未インストールでも draftmate を解決する."""

import sys
from pathlib import Path

REPO_ROOT = str(Path(__file__).resolve().parent)
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)
