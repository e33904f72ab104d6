from __future__ import annotations

import argparse
import asyncio
import logging
import math
import os
import signal
import sys

from .logging_config import setup_logging
from .session import events
from .session.config import SessionConfig
from .session.events import SessionEvent
from .session.manager import PeerSessionManager


logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="peersync headless client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use PEERSYNC_LOG_LEVEL.",
	)
	parser.add_argument(
		"--server-url",
		default=os.environ.get("PEERSYNC_SERVER_URL", SessionConfig.server_url),
		help="WebSocket relay URL",
	)
	parser.add_argument(
		"--name",
		default=os.environ.get("PEERSYNC_NAME", os.environ.get("USER", "")),
		help="Display name",
	)
	parser.add_argument("--peer-id", default=None, help="Stable peer id (generated when omitted)")
	parser.add_argument("--stun", default=None, help="STUN server URL; empty string disables STUN")
	parser.add_argument("--no-media", action="store_true", help="Do not open camera/microphone")
	parser.add_argument("--walk", action="store_true", help="Walk in a circle so peers see movement")
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	config = SessionConfig.from_env()
	config.server_url = args.server_url
	if args.no_media:
		config.enable_media = False
	if args.stun is not None:
		config.stun_url = args.stun or None

	try:
		return asyncio.run(_run(config, args))
	except KeyboardInterrupt:
		return 0


async def _run(config: SessionConfig, args: argparse.Namespace) -> int:
	manager = PeerSessionManager(config)
	local = manager.init(args.peer_id, display_name=args.name)
	stop = asyncio.Event()
	exit_code = 0

	async def on_event(event: SessionEvent) -> None:
		nonlocal exit_code
		if event.type == events.DISCONNECTED_PERMANENT:
			logger.error("relay unreachable, giving up: %s", event.error)
			exit_code = 1
			stop.set()
		elif event.type in (events.PEER_JOINED, events.PEER_LEFT, events.CONNECTED):
			logger.info("%s peer=%s", event.type, event.peer_id)
		elif event.type == events.TRACK_STREAM_READY and event.stream is not None:
			logger.info("%s peer=%s kind=%s tracks=%s", event.type, event.peer_id, event.kind, len(event.stream.tracks))
		elif event.type == events.TRACK_STREAM_REMOVED:
			logger.info("%s peer=%s kind=%s", event.type, event.peer_id, event.kind)

	manager.on_event(on_event)

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		try:
			loop.add_signal_handler(sig, stop.set)
		except (NotImplementedError, RuntimeError):
			# Windows event loops lack signal handlers; Ctrl+C still raises KeyboardInterrupt.
			pass

	logger.info("client start peer_id=%s url=%s", local.id, config.server_url)
	await manager.start()
	walker = asyncio.create_task(_walk(manager), name="demo-walk") if args.walk else None
	try:
		await stop.wait()
	finally:
		if walker is not None:
			walker.cancel()
			await asyncio.gather(walker, return_exceptions=True)
		await manager.shutdown()
	return exit_code


async def _walk(manager: PeerSessionManager, *, radius: float = 10.0, period: float = 20.0) -> None:
	"""Stand-in for a game loop: circle around the spawn point at 10 Hz."""
	assert manager.local is not None
	center = manager.local.position
	speed = 2 * math.pi * radius / period
	t = 0.0
	while True:
		angle = 2 * math.pi * t / period
		manager.update(
			position=(center.x + radius * math.cos(angle), center.y, center.z + radius * math.sin(angle)),
			velocity=(-speed * math.sin(angle), 0.0, speed * math.cos(angle)),
			yaw=angle + math.pi / 2,
		)
		await asyncio.sleep(0.1)
		t += 0.1


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
