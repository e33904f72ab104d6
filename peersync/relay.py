"""Broadcast relay for peer introductions.

The relay does not understand payloads beyond the routing fields:
- `join` records which peer id a connection speaks for.
- `offer`/`answer`/`ice` with `targetPeer` go only to that peer.
- Everything else goes to every other open connection, joined or not.
- When a socket closes, the others get a `leave` for its id.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, Optional, Set, Union

import websockets
from websockets.exceptions import ConnectionClosed

from .logging_config import setup_logging
from .net import protocol


logger = logging.getLogger(__name__)


PING_INTERVAL = 30.0


class Relay:
	def __init__(self) -> None:
		self.clients: Dict[str, Any] = {}
		self.connections: Set[Any] = set()

	async def handler(self, ws: Any) -> None:
		client_id: Optional[str] = None
		logger.info("relay client connected remote=%s", getattr(ws, "remote_address", None))
		self.connections.add(ws)
		try:
			async for raw in ws:
				client_id = await self._route(ws, raw, client_id)
		except ConnectionClosed:
			pass
		finally:
			self.connections.discard(ws)
			if client_id is not None and self.clients.get(client_id) is ws:
				del self.clients[client_id]
				logger.info("relay peer left peer=%s clients=%s", client_id, len(self.clients))
				self._broadcast(protocol.encode(protocol.make_leave(client_id)), exclude=ws)

	async def _route(self, ws: Any, raw: Union[str, bytes], client_id: Optional[str]) -> Optional[str]:
		try:
			msg = json.loads(raw)
		except (json.JSONDecodeError, UnicodeDecodeError):
			logger.warning("relay dropped invalid json from=%s", client_id)
			return client_id
		if not isinstance(msg, dict):
			logger.warning("relay dropped non-object message from=%s", client_id)
			return client_id

		mtype = msg.get("type")
		if mtype == protocol.JOIN and isinstance(msg.get("peerId"), str) and msg["peerId"]:
			client_id = msg["peerId"]
			self.clients[client_id] = ws
			logger.info("relay peer joined peer=%s clients=%s", client_id, len(self.clients))

		target = msg.get("targetPeer")
		if target and mtype in protocol.UNICAST_TYPES:
			dest = self.clients.get(target)
			if dest is None:
				logger.debug("relay dropped unicast to unknown peer type=%s target=%s", mtype, target)
				return client_id
			try:
				await dest.send(raw)
			except ConnectionClosed:
				logger.debug("relay unicast target closed target=%s", target)
			return client_id

		self._broadcast(raw, exclude=ws)
		return client_id

	def _broadcast(self, raw: Union[str, bytes], *, exclude: Any) -> None:
		targets = [c for c in self.connections if c is not exclude]
		if targets:
			websockets.broadcast(targets, raw)


async def serve(host: str, port: int, *, ready: Optional[asyncio.Future] = None) -> None:
	relay = Relay()
	async with websockets.serve(relay.handler, host, port, ping_interval=PING_INTERVAL) as server:
		sockets = list(server.sockets or [])
		bound = sockets[0].getsockname()[1] if sockets else port
		logger.info("relay listening host=%s port=%s", host, bound)
		if ready is not None and not ready.done():
			ready.set_result(bound)
		await asyncio.Future()


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="peersync signaling relay")
	parser.add_argument("--host", default=os.environ.get("PEERSYNC_RELAY_HOST", "0.0.0.0"))
	parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8080")))
	parser.add_argument("--log-level", default=None, help="Logging level. Can also use PEERSYNC_LOG_LEVEL.")
	args = parser.parse_args(argv)

	setup_logging(args.log_level)
	try:
		asyncio.run(serve(args.host, args.port))
	except KeyboardInterrupt:
		pass
	return 0


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
