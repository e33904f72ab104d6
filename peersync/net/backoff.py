"""Reconnect state machine for the signaling channel.

Kept separate from the transport so the delay schedule can be driven and
inspected without a socket.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class ReconnectPolicy:
	"""Exponential backoff: min(base_delay * 2**(attempt-1), cap_delay).

	`next_delay()` consumes one attempt. Once `max_attempts` have been used it
	returns None and the policy is exhausted until `reset()`.
	"""

	base_delay: float = 1.0
	cap_delay: float = 30.0
	max_attempts: int = 10
	attempt: int = 0

	@property
	def exhausted(self) -> bool:
		return self.attempt >= self.max_attempts

	def delay_for(self, attempt: int) -> float:
		if attempt < 1:
			raise ValueError("attempt starts at 1")
		return min(self.base_delay * (2 ** (attempt - 1)), self.cap_delay)

	def next_delay(self) -> Optional[float]:
		if self.exhausted:
			return None
		self.attempt += 1
		return self.delay_for(self.attempt)

	def reset(self) -> None:
		self.attempt = 0
