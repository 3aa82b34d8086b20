"""
Tiny stdio MCP server used by the tests. Standard library only so it runs
under whatever interpreter executes the test suite.

Methods:
  initialize        handshake reply (unless --ignore-init)
  tools/list        one 'echo' tool
  echo              result = params
  slow              sleeps params.delay seconds on a thread, then answers
  hang              never answers
  orphan            emits a response with a bogus id, then the real one
  ask               sends a request to the client first, then answers
  exit              exits with params.code (default 3)
  nan               result holds a NaN

With --stop-reading the server answers initialize and then never reads
stdin again.
"""

import argparse
import json
import sys
import threading
import time

_out = threading.Lock()


def send(message):
    with _out:
        sys.stdout.write(json.dumps(message) + "\n")
        sys.stdout.flush()


def reply(request_id, result):
    send({"jsonrpc": "2.0", "id": request_id, "result": result})


def handle(message, opts):
    method = message.get("method")
    request_id = message.get("id")
    params = message.get("params") or {}

    if method is None or request_id is None:
        return
    if method == "initialize":
        if opts.ignore_init:
            return
        reply(request_id, {
            "protocolVersion": params.get("protocolVersion", "2025-06-18"),
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "fake", "version": "1.0"},
        })
        if opts.stop_reading:
            time.sleep(3600)
        if opts.exit_after_init:
            sys.stderr.write("fake server: exiting after init\n")
            sys.stderr.flush()
            time.sleep(0.2)
            sys.exit(4)
    elif method == "tools/list":
        reply(request_id, {"tools": [{"name": "echo", "inputSchema": {"type": "object"}}]})
    elif method == "nan":
        reply(request_id, {"x": float("nan")})
    elif method == "echo":
        reply(request_id, params)
    elif method == "slow":
        delay = float(params.get("delay", 0.2))
        threading.Thread(target=lambda: (time.sleep(delay), reply(request_id, {"slept": delay})), daemon=True).start()
    elif method == "hang":
        pass
    elif method == "orphan":
        reply("no-such-request", {"bogus": True})
        reply(request_id, {"ok": True})
    elif method == "ask":
        send({"jsonrpc": "2.0", "id": "srv-1", "method": "sampling/createMessage", "params": {}})
        reply(request_id, {"asked": True})
    elif method == "exit":
        sys.stderr.write("fake server: exit requested\n")
        sys.stderr.flush()
        sys.exit(int(params.get("code", 3)))
    else:
        send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"Method not found: {method}"}})


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--crash", action="store_true", help="write to stderr and exit 1 immediately")
    parser.add_argument("--exit-after-init", action="store_true")
    parser.add_argument("--ignore-init", action="store_true")
    parser.add_argument("--stop-reading", action="store_true")
    opts = parser.parse_args()

    if opts.crash:
        sys.stderr.write("fake server: boom, missing API token\n")
        sys.stderr.flush()
        sys.exit(1)

    sys.stderr.write("fake server: ready\n")
    sys.stderr.flush()
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except ValueError:
            continue
        if isinstance(message, dict):
            handle(message, opts)


if __name__ == "__main__":
    main()
