"""Reconnecting WebSocket signaling channel.

This is intentionally unaware of aiortc and of session state. It speaks the
envelope protocol from `peersync.net.protocol`, delivers parsed envelopes and
connectivity events, and owns the reconnect backoff. The session re-announces
itself from `on_connected`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from . import protocol
from .backoff import ReconnectPolicy


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
Connector = Callable[[str], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]


class SignalingExhausted(Exception):
	"""Reconnect attempts ran out; the channel needs a manual restart."""

	def __init__(self, url: str, attempts: int):
		super().__init__(f"gave up reconnecting to {url} after {attempts} attempts")
		self.url = url
		self.attempts = attempts


@dataclass
class SignalingCallbacks:
	on_log: Optional[AsyncCallback] = None
	on_envelope: Optional[AsyncCallback] = None  # (envelope: protocol.Envelope)
	on_connected: Optional[AsyncCallback] = None  # ()
	on_disconnected: Optional[AsyncCallback] = None  # () transport lost, reconnect pending
	on_disconnected_permanent: Optional[AsyncCallback] = None  # (error: SignalingExhausted)
	on_error: Optional[AsyncCallback] = None  # (error: str, payload: dict)


class SignalingClient:
	def __init__(
		self,
		url: str,
		peer_id: str,
		callbacks: Optional[SignalingCallbacks] = None,
		*,
		policy: Optional[ReconnectPolicy] = None,
		connect_timeout: float = 5.0,
		connector: Optional[Connector] = None,
		sleep: Optional[Sleeper] = None,
	):
		self.url = url
		self.peer_id = peer_id
		self.callbacks = callbacks or SignalingCallbacks()
		self.policy = policy or ReconnectPolicy()
		self.permanently_failed = False

		self._connect_timeout = connect_timeout
		self._connector: Connector = connector or websockets.connect
		self._sleep: Sleeper = sleep or asyncio.sleep

		# websockets' connection types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._supervisor: Optional[asyncio.Task[None]] = None
		self._first_attempt: Optional[asyncio.Future[bool]] = None
		self._send_lock = asyncio.Lock()
		self._connected_evt = asyncio.Event()
		self._closing = False

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._connected_evt.is_set()

	def on_envelope(self, handler: AsyncCallback) -> None:
		"""Route received envelopes to `handler`, replacing any previous one."""
		self.callbacks.on_envelope = handler

	async def connect(self) -> bool:
		"""Start the channel and wait for the first connection attempt.

		A failed first attempt is treated like a transport loss: the reconnect
		schedule keeps running in the background and returns False here.
		"""
		if self._supervisor and not self._supervisor.done():
			return self.is_connected

		self._closing = False
		self.permanently_failed = False
		self.policy.reset()
		self._first_attempt = asyncio.get_running_loop().create_future()
		self._supervisor = asyncio.create_task(self._supervise(), name="signaling-supervisor")
		return await self._first_attempt

	async def wait_connected(self, timeout: Optional[float] = None) -> bool:
		try:
			await asyncio.wait_for(self._connected_evt.wait(), timeout=timeout)
		except asyncio.TimeoutError:
			return False
		return True

	async def close(self) -> None:
		await self._log("Disconnecting")
		logger.info("signaling close url=%s", self.url)
		self._closing = True
		self._connected_evt.clear()

		# Cancel the reconnect timer before the transport goes away.
		task = self._supervisor
		self._supervisor = None
		if task and not task.done():
			task.cancel()
			try:
				await task
			except asyncio.CancelledError:
				pass
			except Exception:
				logger.exception("signaling supervisor failed during close")

		ws = self._ws
		self._ws = None
		if ws is not None:
			try:
				await ws.close()
			except Exception as e:
				logger.debug("signaling close error=%s", e)

	async def join(self, data: Dict[str, Any]) -> bool:
		return await self.send(protocol.make_join(self.peer_id, data))

	async def send_state(self, data: Dict[str, Any]) -> bool:
		return await self.send(protocol.make_state(self.peer_id, data))

	async def leave(self) -> bool:
		return await self.send(protocol.make_leave(self.peer_id))

	async def send_offer(self, to_peer: str, sdp: str) -> bool:
		return await self.send(protocol.make_offer(self.peer_id, to_peer, sdp))

	async def send_answer(self, to_peer: str, sdp: str) -> bool:
		return await self.send(protocol.make_answer(self.peer_id, to_peer, sdp))

	async def send_ice(self, to_peer: str, candidate: Optional[protocol.IceCandidateDict]) -> bool:
		return await self.send(protocol.make_ice(self.peer_id, to_peer, candidate))

	async def send(self, payload: Dict[str, Any]) -> bool:
		"""Send one envelope; returns False if the channel is not connected."""
		ws = self._ws
		mtype = payload.get("type")
		if ws is None or not self._connected_evt.is_set():
			logger.debug("signaling send dropped (not connected) type=%s", mtype)
			return False

		to_peer = payload.get("targetPeer")
		if mtype in (protocol.OFFER, protocol.ANSWER):
			sdp = payload.get(mtype) or {}
			logger.info("signaling send type=%s to=%s sdp_len=%s", mtype, to_peer, len(str(sdp.get("sdp", ""))))
		elif mtype == protocol.ICE:
			logger.debug("signaling send type=ice to=%s", to_peer)
		else:
			logger.debug("signaling send type=%s", mtype)

		raw = protocol.encode(payload)
		try:
			async with self._send_lock:
				await ws.send(raw)
		except ConnectionClosed as e:
			logger.info("signaling send failed (closed) type=%s code=%s", mtype, getattr(e, "code", None))
			return False
		return True

	async def _supervise(self) -> None:
		try:
			while not self._closing:
				connected = await self._open()
				self._resolve_first_attempt(connected)

				if connected:
					self.policy.reset()
					await self._emit_connected()
					await self._recv_loop()
					if self._closing:
						return
					await self._log("Signaling connection lost")
					if self.callbacks.on_disconnected:
						await self.callbacks.on_disconnected()

				delay = self.policy.next_delay()
				if delay is None:
					await self._fail_permanently()
					return

				logger.info(
					"signaling reconnect attempt=%s/%s delay=%.1fs",
					self.policy.attempt,
					self.policy.max_attempts,
					delay,
				)
				await self._log(f"Reconnecting ({self.policy.attempt}/{self.policy.max_attempts}) in {delay:.0f}s")
				await self._sleep(delay)
		finally:
			self._resolve_first_attempt(False)

	async def _open(self) -> bool:
		await self._log(f"Connecting to {self.url}")
		logger.info("signaling connect url=%s", self.url)
		try:
			ws = await asyncio.wait_for(self._connector(self.url), timeout=self._connect_timeout)
		except asyncio.CancelledError:
			raise
		except Exception as e:
			logger.warning("signaling connect failed url=%s error=%s", self.url, e)
			await self._emit_error("connect-failed", {"url": self.url, "error": str(e)})
			return False

		self._ws = ws
		self._connected_evt.set()
		return True

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("signaling recv loop started")

		try:
			async for raw in ws:
				try:
					envelope = protocol.decode(raw)
				except protocol.ProtocolError as e:
					logger.warning("signaling dropped malformed envelope reason=%s", e.message)
					await self._emit_error(e.message, {"raw": raw})
					continue

				if envelope.peer_id == self.peer_id:
					logger.debug("signaling ignored own envelope type=%s", type(envelope).__name__)
					continue

				if self.callbacks.on_envelope:
					try:
						await self.callbacks.on_envelope(envelope)
					except Exception:
						logger.exception("signaling envelope handler failed type=%s", type(envelope).__name__)

		except ConnectionClosed as e:
			logger.info("signaling connection closed code=%s", getattr(e, "code", None))
		except Exception as e:
			logger.exception("signaling recv loop crashed")
			await self._emit_error(f"recv-loop-exception: {e}", {})
		finally:
			self._connected_evt.clear()
			logger.debug("signaling recv loop stopped")
			try:
				await ws.close()
			except Exception:
				pass
			if self._ws is ws:
				self._ws = None

	async def _emit_connected(self) -> None:
		logger.info("signaling connected url=%s", self.url)
		await self._log(f"Connected to {self.url}")
		if self.callbacks.on_connected:
			try:
				await self.callbacks.on_connected()
			except Exception:
				logger.exception("signaling on_connected handler failed")

	async def _fail_permanently(self) -> None:
		self.permanently_failed = True
		error = SignalingExhausted(self.url, self.policy.attempt)
		logger.error("signaling reconnect exhausted url=%s attempts=%s", self.url, self.policy.attempt)
		await self._log("Max reconnection attempts reached; restart required")
		if self.callbacks.on_disconnected_permanent:
			await self.callbacks.on_disconnected_permanent(error)

	def _resolve_first_attempt(self, connected: bool) -> None:
		fut = self._first_attempt
		if fut is not None and not fut.done():
			fut.set_result(connected)

	async def _emit_error(self, error: str, payload: Dict[str, Any]) -> None:
		await self._log(f"Signaling error: {error}")
		if self.callbacks.on_error:
			await self.callbacks.on_error(error, payload)

	async def _log(self, message: str) -> None:
		if self.callbacks.on_log:
			await self.callbacks.on_log(message)
