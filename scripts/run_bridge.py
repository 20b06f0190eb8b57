#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[bridge] port={os.environ.get('BRIDGE_PORT', '8765')} | "
    f"cdp={'disabled' if os.environ.get('BRIDGE_DISABLE_CDP') else os.environ.get('BRIDGE_CDP_ENDPOINT', 'detect')} | "
    f"tool_server={os.environ.get('BRIDGE_TOOL_SERVER', 'npx -y @playwright/mcp@latest')}",
    file=sys.stderr,
)

from mcp_servers.bridge.main import main  # noqa: E402

if __name__ == "__main__":
    main()
