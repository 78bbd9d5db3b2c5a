"""Minimal stand-in for the agent runtime's app-server mode.

Usage: fake_acp_agent.py <scenario>

Speaks newline-delimited JSON-RPC on stdin/stdout.  Scenarios:

  ok              deltas "He" + "llo" (and one reasoning delta), completed
  fallback        no deltas; full text only in item/completed
  echo            one delta carrying the turn/start prompt text
  failed          turn/completed with status "failed"
  transient       a willRetry error notification, then a normal reply
  rpc_error       error response to thread/start
  crash           exits with code 3 on thread/start
  server_request  asks the client for approval before replying
  hang            accepts the turn, then never completes
  noise           banner lines on stdout before the normal reply
  no_models       initializes but answers model/list with an error
"""

import json
import sys
import time


def send(message):
    sys.stdout.write(json.dumps({"jsonrpc": "2.0", **message}) + "\n")
    sys.stdout.flush()


def notify(method, params):
    send({"method": method, "params": params})


def read():
    line = sys.stdin.readline()
    if not line:
        sys.exit(0)
    return json.loads(line)


def main():
    scenario = sys.argv[1] if len(sys.argv) > 1 else "ok"
    if scenario == "noise":
        sys.stdout.write("agent runtime v0 starting\n\n")
        sys.stdout.flush()

    while True:
        msg = read()
        method = msg.get("method")
        if method == "initialize":
            send({"id": msg["id"], "result": {"serverInfo": {"name": "fake"}}})
        elif method == "initialized":
            continue
        elif method == "model/list":
            if scenario == "no_models":
                send({"id": msg["id"], "error": {"code": -32601, "message": "model/list not supported"}})
                continue
            send({"id": msg["id"], "result": {"data": [{"id": "gpt-b"}, {"id": "gpt-a"}]}})
        elif method == "thread/start":
            if scenario == "crash":
                sys.stderr.write("boom: model backend unavailable\n")
                sys.stderr.flush()
                sys.exit(3)
            if scenario == "rpc_error":
                send({"id": msg["id"], "error": {"code": -32000, "message": "thread quota exceeded"}})
                continue
            send({"id": msg["id"], "result": {"thread": {"id": "thr_1"}}})
        elif method == "turn/start":
            send({"id": msg["id"], "result": {"turn": {"id": "turn_1"}}})
            run_turn(scenario, msg["params"])
        elif "id" in msg and method is None:
            # Response to our server request.
            if scenario == "server_request":
                error = msg.get("error") or {}
                notify("item/agentMessage/delta", {"delta": f"declined:{error.get('code')}"})
                complete("completed")


def complete(status, error=None):
    turn = {"id": "turn_1", "status": status}
    if error:
        turn["error"] = {"message": error}
    notify("turn/completed", {"threadId": "thr_1", "turn": turn})


def run_turn(scenario, params):
    if scenario in ("ok", "noise"):
        notify("item/reasoning/textDelta", {"delta": "thinking"})
        notify("item/agentMessage/delta", {"delta": "He"})
        notify("item/agentMessage/delta", {"delta": "llo"})
        notify("item/completed", {"item": {"type": "agentMessage", "text": "Hello"}})
        complete("completed")
    elif scenario == "fallback":
        notify("item/completed", {"item": {"type": "agentMessage", "text": "Full answer"}})
        complete("completed")
    elif scenario == "echo":
        notify("item/agentMessage/delta", {"delta": params["input"][0]["text"]})
        complete("completed")
    elif scenario == "failed":
        complete("failed", "sandbox denied")
    elif scenario == "transient":
        notify("error", {"error": {"message": "reconnecting"}, "willRetry": True})
        notify("item/agentMessage/delta", {"delta": "recovered"})
        complete("completed")
    elif scenario == "server_request":
        send({"id": 99, "method": "item/commandExecution/requestApproval", "params": {}})
    elif scenario == "hang":
        notify("item/agentMessage/delta", {"delta": "partial"})
        time.sleep(3600)


if __name__ == "__main__":
    main()
