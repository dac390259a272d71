from __future__ import annotations
import json, asyncio, mimetypes
from pathlib import Path
import typer
import httpx
from rich import print
from rich.table import Table

app = typer.Typer(help="Outreach CLI - send, broadcast and inspect messages through a running outreach service.")

def _ws_url(host: str, port: int) -> str:
    return f"ws://{host}:{port}/ws"

def _http_url(host: str, port: int, path: str) -> str:
    return f"http://{host}:{port}{path}"

def _show(resp: httpx.Response) -> dict:
    body = resp.json()
    if resp.status_code >= 400:
        print(f"[bold red]HTTP {resp.status_code}[/bold red]", body)
        raise typer.Exit(code=1)
    print(body)
    return body

@app.command()
def send(
    phone: str,
    text: str,
    member_id: str = typer.Option(None, help="Persist the message in this member's conversation."),
    host: str = "127.0.0.1",
    port: int = 8788,
):
    """Send a text message."""
    payload = {"kind": "text", "routing": phone, "body": text, "member_id": member_id}
    _show(httpx.post(_http_url(host, port, "/api/messages"), json=payload, timeout=60))

@app.command()
def reply(
    phone: str,
    target_guid: str,
    text: str,
    part_index: int = 0,
    member_id: str = None,
    host: str = "127.0.0.1",
    port: int = 8788,
):
    """Reply in-thread to an existing message."""
    payload = {"kind": "reply", "routing": phone, "body": text, "target_guid": target_guid,
               "part_index": part_index, "member_id": member_id}
    _show(httpx.post(_http_url(host, port, "/api/messages"), json=payload, timeout=60))

@app.command()
def react(
    phone: str,
    target_guid: str,
    reaction: str = typer.Argument(..., help="love, like, dislike, laugh, emphasize, question (prefix '-' to remove)"),
    member_id: str = None,
    host: str = "127.0.0.1",
    port: int = 8788,
):
    """Add or remove a tapback on a message."""
    payload = {"kind": "reaction", "routing": phone, "reaction": reaction, "target_guid": target_guid,
               "member_id": member_id}
    _show(httpx.post(_http_url(host, port, "/api/messages"), json=payload, timeout=60))

@app.command()
def attach(
    phone: str,
    path: Path = typer.Argument(..., exists=True, dir_okay=False),
    caption: str = None,
    member_id: str = None,
    host: str = "127.0.0.1",
    port: int = 8788,
):
    """Send a file attachment."""
    mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    form = {"phone": phone}
    if caption:
        form["message"] = caption
    if member_id:
        form["member_id"] = member_id
    with path.open("rb") as fh:
        files = {"file": (path.name, fh, mime)}
        _show(httpx.post(_http_url(host, port, "/api/attachments"), data=form, files=files, timeout=120))

@app.command()
def broadcast(
    text: str,
    recipients_file: Path = typer.Argument(..., exists=True, dir_okay=False,
                                           help="JSON list of {member_id, name, phone}"),
    host: str = "127.0.0.1",
    port: int = 8788,
):
    """Start a paced broadcast; prints the broadcast id."""
    recipients = json.loads(recipients_file.read_text(encoding="utf-8"))
    body = _show(httpx.post(_http_url(host, port, "/api/broadcasts"),
                            json={"message": text, "recipients": recipients}, timeout=30))
    print(f"[bold]Track with:[/bold] outreach status {body.get('broadcast_id')}")

@app.command()
def status(broadcast_id: str, host: str = "127.0.0.1", port: int = 8788):
    """Show the current report of a broadcast or intro run."""
    resp = httpx.get(_http_url(host, port, f"/api/broadcasts/{broadcast_id}"), timeout=10)
    if resp.status_code >= 400:
        _show(resp)
    rep = resp.json()
    print(f"[bold]{rep['broadcast_id']}[/bold] {rep['status']} - {rep['message']}")
    t = Table(title="Recipients")
    t.add_column("name"); t.add_column("phone"); t.add_column("ok"); t.add_column("guid / error")
    for o in rep.get("outcomes", []):
        t.add_row(o["name"], o["phone"], "yes" if o["ok"] else "no", str(o.get("guid") if o["ok"] else o.get("error")))
    print(t)

@app.command()
def messages(member_id: str, limit: int = 50, host: str = "127.0.0.1", port: int = 8788):
    """List a member's conversation history."""
    resp = httpx.get(_http_url(host, port, f"/api/members/{member_id}/messages"), params={"limit": limit}, timeout=10)
    msgs = resp.json().get("messages", [])
    t = Table(title=f"Messages for {member_id}")
    t.add_column("created_at"); t.add_column("dir"); t.add_column("status"); t.add_column("guid"); t.add_column("body")
    for m in msgs:
        t.add_row(m["created_at"], m["direction"], m["delivery_status"], m["guid"], (m.get("body") or "")[:60])
    print(t)

@app.command()
def member(member_id: str, name: str, phone: str, host: str = "127.0.0.1", port: int = 8788):
    """Create or update a member directory entry."""
    _show(httpx.put(_http_url(host, port, f"/api/members/{member_id}"), json={"name": name, "phone": phone}, timeout=10))

@app.command()
def watch(broadcast_id: str = None, host: str = "127.0.0.1", port: int = 8788):
    """Stream live events; optionally only one broadcast's progress."""
    import websockets

    async def _run():
        async with websockets.connect(_ws_url(host, port)) as ws:
            if broadcast_id:
                await ws.send(json.dumps({"type": "req:subscribe", "payload": {"broadcast_id": broadcast_id}}))
            print("[bold]Streaming events[/bold] (Ctrl+C to stop)")
            while True:
                msg = json.loads(await ws.recv())
                print(msg)
                if (
                    broadcast_id
                    and msg.get("type") == "evt:broadcast.completed"
                    and msg.get("payload", {}).get("broadcast_id") == broadcast_id
                ):
                    break
    asyncio.run(_run())

def main():
    """Entry point for the CLI."""
    app()
