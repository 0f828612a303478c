#!/usr/bin/env python3
"""Worker process body: one request in on stdin, one JSON reply out on stdout.

Spawned by ``isolation.IsolationBoundary``, one process per request. The
reply is a single line, either ``{"success": true, "result": {...}}`` or
``{"success": false, "error": "..."}``. Nothing else is ever written to the
real stdout.
"""

import json
import os
import sys
import tracemalloc

# Started before anything else so the "before" memory sample reflects the
# worker's real heap, not just what the snippet allocates.
tracemalloc.start()

from stream_sandbox import execute_stream  # noqa: E402


def main() -> int:
    reply_stream = sys.stdout
    try:
        payload = json.loads(sys.stdin.read() or "{}")
        result = execute_stream(
            str(payload["code"]),
            max_results=int(payload["maxResults"]),
            timeout_ms=int(payload["timeoutMs"]),
        )
        reply = {"success": True, "result": result.to_dict()}
        exit_code = 0
    except Exception as e:
        reply = {"success": False, "error": f"{type(e).__name__}: {e}"}
        exit_code = 1

    reply_stream.write(json.dumps(reply, default=str) + "\n")
    reply_stream.flush()
    return exit_code


if __name__ == "__main__":
    # Scheduler threads started by the snippet may still be alive; leave
    # without waiting for them.
    os._exit(main())
