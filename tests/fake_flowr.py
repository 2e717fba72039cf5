"""A scripted stand-in for the flowR engine.

Speaks the newline-delimited JSON protocol over stdio (when run as a
script) or TCP (``serve_tcp``). Programs are one statement per line;
``name <- expr`` defines ``name``, everything else only uses names.
Slicing is a backward slice over those definitions and uses.

Special content:
    ``quit()``   the engine dies while analyzing
    ``((``       the engine reports a (non-fatal) parse error
"""

from __future__ import annotations

import argparse
import asyncio
import json
import re
import sys

_ASSIGN = re.compile(r"^\s*([A-Za-z.][\w.]*)\s*<-\s*(.*)$")
_NAME = re.compile(r"[A-Za-z.][\w.]*")


class EngineExit(Exception):
    """The engine stops talking."""


def _uses(expr: str) -> set[str]:
    """Names read by ``expr``; called function names are not reads."""
    return {
        m.group(0) for m in _NAME.finditer(expr)
        if not expr[m.end():].lstrip().startswith("(")
    }


class Statement:
    def __init__(self, line: int, text: str) -> None:
        self.line = line
        self.text = text
        m = _ASSIGN.match(text)
        if m:
            self.defines: str | None = m.group(1)
            self.uses = _uses(m.group(2))
        else:
            self.defines = None
            self.uses = _uses(text)


def parse_program(content: str) -> list[Statement]:
    if "((" in content:
        raise ValueError("unable to parse R code: unexpected '('")
    return [
        Statement(i + 1, text)
        for i, text in enumerate(content.split("\n"))
        if text.strip()
    ]


def backward_slice(statements: list[Statement], criteria: list[str]) -> list[Statement]:
    by_line = {s.line: s for s in statements}
    todo = []
    for criterion in criteria:
        line = int(criterion.split(":")[0])
        if line in by_line:
            todo.append(by_line[line])
    included: dict[int, Statement] = {}
    while todo:
        stmt = todo.pop()
        if stmt.line in included:
            continue
        included[stmt.line] = stmt
        for name in stmt.uses:
            defs = [s for s in statements if s.defines == name and s.line < stmt.line]
            if defs:
                todo.append(defs[-1])
    return [included[line] for line in sorted(included)]


class FakeEngine:
    def __init__(self, flowr_version: str = "2.0.0", r_version: str = "4.3.1") -> None:
        self.flowr_version = flowr_version
        self.r_version = r_version
        self.files: dict[str, str] = {}
        self.requests: list[dict] = []

    def hello(self, client: int = 0) -> dict:
        return {
            "type": "hello",
            "clientName": f"client-{client}",
            "versions": {"flowr": self.flowr_version, "r": self.r_version},
        }

    def handle(self, message: dict) -> dict:
        self.requests.append(message)
        kind = message.get("type")
        msg_id = message.get("id")
        try:
            if kind == "request-file-analysis":
                content = message["content"]
                if "quit()" in content:
                    raise EngineExit("R session died")
                parse_program(content)
                self.files[message["filetoken"]] = content
                return {"type": "response-file-analysis", "id": msg_id, "results": {}}
            if kind == "request-slice":
                statements = parse_program(self.files[message["filetoken"]])
                sliced = backward_slice(statements, message["criterion"])
                return {
                    "type": "response-slice",
                    "id": msg_id,
                    "results": {
                        "slice": {"elements": [
                            {"id": str(s.line), "location": [s.line, 1, s.line, len(s.text)]}
                            for s in sliced
                        ]},
                        "reconstruct": {"code": "\n".join(s.text for s in sliced)},
                    },
                }
            if kind == "request-dataflow-diagram":
                statements = parse_program(self.files[message["filetoken"]])
                lines = ["flowchart TD"]
                for s in statements:
                    lines.append(f'    {s.line}["{s.text.strip()}"]')
                for s in statements:
                    for name in sorted(s.uses):
                        defs = [d for d in statements if d.defines == name and d.line < s.line]
                        if defs:
                            lines.append(f"    {s.line} -->|reads| {defs[-1].line}")
                return {
                    "type": "response-dataflow-diagram",
                    "id": msg_id,
                    "results": {"mermaid": "\n".join(lines)},
                }
        except KeyError as e:
            return {"type": "error", "id": msg_id, "fatal": False, "reason": f"unknown file {e}"}
        except ValueError as e:
            return {"type": "error", "id": msg_id, "fatal": False, "reason": str(e)}
        return {"type": "error", "id": msg_id, "fatal": False, "reason": f"unknown request {kind!r}"}


# ── Transports ────────────────────────────────────────────────────


def _send(stream, message: dict) -> None:
    stream.write(json.dumps(message) + "\n")
    stream.flush()


def serve_stdio(engine: FakeEngine, *, greet: bool = True) -> int:
    if greet:
        _send(sys.stdout, engine.hello())
    for line in sys.stdin:
        if not line.strip():
            continue
        try:
            response = engine.handle(json.loads(line))
        except EngineExit as e:
            print(f"fatal: {e}", file=sys.stderr)
            return 3
        _send(sys.stdout, response)
    return 0


async def serve_tcp(engine: FakeEngine, host: str = "127.0.0.1", port: int = 0, *, greet: bool = True):
    """Start a TCP server; returns the asyncio Server."""
    clients = 0

    async def on_client(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        nonlocal clients
        clients += 1
        if greet:
            writer.write((json.dumps(engine.hello(clients)) + "\n").encode())
            await writer.drain()
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    response = engine.handle(json.loads(line))
                except EngineExit:
                    break
                writer.write((json.dumps(response) + "\n").encode())
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    return await asyncio.start_server(on_client, host, port)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--stdio", action="store_true")
    parser.add_argument("--flowr-version", default="2.0.0")
    parser.add_argument("--r-version", default="4.3.1")
    parser.add_argument("--r-path", default=None)
    parser.add_argument("--silent", action="store_true", help="never send hello")
    args = parser.parse_args(argv)
    engine = FakeEngine(args.flowr_version, args.r_version)
    return serve_stdio(engine, greet=not args.silent)


if __name__ == "__main__":
    sys.exit(main())
