"""Entry point for telecall: the signaling broker and a command-line peer."""

import argparse
import asyncio
from typing import Optional, Tuple

import aiohttp

from agent import CallAgent
from appointments import find_appointment, resolve_remote_user_id, role_for
from call_state import CallRole
from config import HTTP_HOST, HTTP_PORT, SIGNALING_TOKEN, SIGNALING_URL, log
from ice_servers import get_ice_servers
from server import start_signaling_server
from signaling import SignalingChannel


async def serve(host: str, port: int) -> None:
    runner = await start_signaling_server(host, port)
    log.warning("[BOOT] signaling broker on ws://%s:%d/ws", host, port)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


async def _resolve(
    http: aiohttp.ClientSession, user_id: str, appointment_id: str, remote: Optional[str], mode: str
) -> Tuple[str, str]:
    """Remote user id and call/join mode; "auto" takes the mode from our role in the appointment."""
    if remote and mode != "auto":
        return remote, mode
    appointment = await find_appointment(http, appointment_id)
    if appointment is None:
        raise SystemExit(f"appointment {appointment_id} not found")
    try:
        remote = remote or resolve_remote_user_id(appointment, user_id)
    except ValueError as e:
        raise SystemExit(str(e)) from e
    if mode == "auto":
        mode = "call" if role_for(appointment, user_id) is CallRole.INITIATOR else "join"
    return remote, mode


async def run_peer(mode: str, args: argparse.Namespace) -> None:
    async with aiohttp.ClientSession() as http:
        ice_servers = await get_ice_servers(http)
        remote, mode = await _resolve(http, args.user, args.appointment, args.remote, mode)

    channel = SignalingChannel(args.url, args.token)
    agent = CallAgent(
        args.user,
        channel,
        ice_servers=ice_servers,
        # only the appointment we came for rings through
        accept_call=lambda session: session.appointment_id == args.appointment,
    )
    await agent.identify()
    reader = asyncio.ensure_future(channel.serve_forever())
    try:
        await channel.wait_connected()
        if mode == "call":
            call = await agent.call(args.appointment, remote)
        else:
            call = await agent.join(args.appointment, remote)
        print(f"{mode}: appointment {args.appointment} with {remote}, Ctrl+C to hang up")
        await call.closed.wait()
        session = call.session
        print(f"call ended: {session.end_reason} ({session.duration or 0:.0f}s)")
    finally:
        await agent.close()
        await channel.close()
        reader.cancel()
        await asyncio.gather(reader, return_exceptions=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="telecall", description="Telemedicine call signaling and peer")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="run the signaling broker")
    p_serve.add_argument("--host", default=HTTP_HOST)
    p_serve.add_argument("--port", type=int, default=HTTP_PORT)

    for name, text in (
        ("call", "place the call for an appointment"),
        ("join", "join an appointment's call"),
        ("auto", "call or join, by our role in the appointment (needs the backend)"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("--user", required=True, help="own user id")
        p.add_argument("--appointment", required=True, help="appointment id")
        p.add_argument("--remote", help="remote user id (default: resolved from the appointment)")
        p.add_argument("--url", default=SIGNALING_URL, help="signaling broker URL")
        p.add_argument("--token", default=SIGNALING_TOKEN, help="signaling token")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "serve":
            asyncio.run(serve(args.host, args.port))
        else:
            asyncio.run(run_peer(args.command, args))
    except KeyboardInterrupt:
        log.info("[BOOT] interrupted")


if __name__ == "__main__":
    main()
