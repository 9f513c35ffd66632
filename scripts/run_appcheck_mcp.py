#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[mcp] binary={os.environ.get('APPCHECK_BROWSER_BINARY', 'auto')} | "
    f"port={os.environ.get('APPCHECK_CDP_PORT', '9222')} | "
    f"app={os.environ.get('APPCHECK_APP_URL', 'http://localhost:4000')} | "
    f"supervise={os.environ.get('APPCHECK_SUPERVISE', '1')}",
    file=sys.stderr,
)

from mcp_servers.appcheck.main import main  # noqa: E402

if __name__ == "__main__":
    main()
