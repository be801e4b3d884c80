"""Turn-taking and barge-in for one call.

Two interchangeable policies decide when captured speech becomes a turn:

- UpstreamVadPolicy: every frame is forwarded and the realtime endpoint's own
  voice activity detection ends turns. Its parameters are passed through in
  session.update and never reinterpreted here.
- EnergyVadPolicy: frames are classified locally by RMS energy and the
  controller commits the input buffer after enough consecutive silence.

Interruption is shared: cancel the response, truncate the assistant item to
what was actually played, clear downstream playback.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from app.ai.duplex_base import RealtimeClient, TurnDetection
from app.config import TurnSettings
from app.core.constants import AudioConstants
from app.core.session import CallSession
from app.transport.base import TransportAdapter
from app.utils.codec import pcm16_from_bytes, rms


@dataclass
class CommitState:
    """Local turn state used by the energy policy."""

    has_user_spoken: bool = False
    has_committed: bool = False
    silence_frames: int = 0
    speech_frames: int = 0

    def reset(self) -> None:
        self.has_user_spoken = False
        self.has_committed = False
        self.silence_frames = 0
        self.speech_frames = 0


@dataclass
class FrameDecision:
    """What a policy concluded from one captured frame."""

    is_speech: bool = False
    end_of_turn: bool = False
    barge_in: bool = False


class TurnPolicy(ABC):
    """Strategy deciding turn boundaries from captured frames."""

    name: str = ""
    commits_locally: bool = False

    @abstractmethod
    def turn_detection(self) -> Optional[TurnDetection]:
        """Turn detection to request from the endpoint (None = disabled)."""
        ...

    @abstractmethod
    def on_frame(self, pcm16_24k: bytes, state: CommitState, ai_speaking: bool) -> FrameDecision:
        ...


class UpstreamVadPolicy(TurnPolicy):
    """Delegate turn detection to the realtime endpoint."""

    name = "upstream_vad"
    commits_locally = False

    def __init__(self, turn_detection: Optional[TurnDetection] = None) -> None:
        self._turn_detection = turn_detection or TurnDetection()

    def turn_detection(self) -> Optional[TurnDetection]:
        return self._turn_detection

    def on_frame(self, pcm16_24k: bytes, state: CommitState, ai_speaking: bool) -> FrameDecision:
        return FrameDecision()


class EnergyVadPolicy(TurnPolicy):
    """Local RMS energy voice activity detection."""

    name = "local_energy"
    commits_locally = True

    def __init__(
        self,
        energy_threshold: float = 500.0,
        silence_frames: int = 55,
        barge_in_enabled: bool = True,
        barge_in_min_frames: int = 1
    ) -> None:
        """Initialize energy policy.

        Args:
            energy_threshold: RMS above which a frame counts as speech
            silence_frames: Consecutive silent frames that end a turn
            barge_in_enabled: Interrupt the assistant on local speech
            barge_in_min_frames: Consecutive speech frames needed to barge in
        """
        if silence_frames < 1:
            raise ValueError("silence_frames must be at least 1")
        if barge_in_min_frames < 1:
            raise ValueError("barge_in_min_frames must be at least 1")

        self.energy_threshold = energy_threshold
        self.silence_frames = silence_frames
        self.barge_in_enabled = barge_in_enabled
        self.barge_in_min_frames = barge_in_min_frames

    def turn_detection(self) -> Optional[TurnDetection]:
        return None

    def on_frame(self, pcm16_24k: bytes, state: CommitState, ai_speaking: bool) -> FrameDecision:
        energy = rms(pcm16_from_bytes(pcm16_24k))

        if energy > self.energy_threshold:
            state.has_user_spoken = True
            state.has_committed = False
            state.silence_frames = 0
            state.speech_frames += 1

            barge_in = (
                self.barge_in_enabled
                and ai_speaking
                and state.speech_frames >= self.barge_in_min_frames
            )
            return FrameDecision(is_speech=True, barge_in=barge_in)

        state.speech_frames = 0
        if not state.has_user_spoken:
            return FrameDecision()

        state.silence_frames += 1
        end_of_turn = state.silence_frames >= self.silence_frames and not state.has_committed
        return FrameDecision(end_of_turn=end_of_turn)


def create_turn_policy(settings: TurnSettings) -> TurnPolicy:
    """Build the configured turn policy.

    Raises:
        ValueError: If the policy name is unknown
    """
    if settings.turn_policy == UpstreamVadPolicy.name:
        return UpstreamVadPolicy(TurnDetection(
            type=settings.vad_type,
            threshold=settings.vad_threshold,
            silence_duration_ms=settings.vad_silence_ms,
            prefix_padding_ms=settings.vad_prefix_ms,
            eagerness=settings.vad_eagerness
        ))
    if settings.turn_policy == EnergyVadPolicy.name:
        return EnergyVadPolicy(
            energy_threshold=settings.energy_threshold,
            silence_frames=settings.silence_frames,
            barge_in_enabled=settings.barge_in_enabled,
            barge_in_min_frames=settings.barge_in_min_frames
        )
    raise ValueError(f"Unknown turn policy: {settings.turn_policy}")


class TurnTakingController:
    """Per-call turn-taking state machine.

    States: idle, speaking, ai-responding; crossed with an interrupt cooldown
    that is either active or not. The controller is driven by the bridge from
    both directions; each direction calls it sequentially.
    """

    def __init__(
        self,
        session: CallSession,
        upstream: RealtimeClient,
        transport: TransportAdapter,
        policy: TurnPolicy,
        interrupt_cooldown_ms: int = 2000,
        drop_audio_during_cooldown: bool = False,
        barge_in_enabled: bool = True,
        time_fn: Callable[[], float] = time.monotonic
    ) -> None:
        """Initialize controller.

        Args:
            session: Call session whose playback state is tracked
            upstream: Realtime client receiving audio and commands
            transport: Downstream adapter whose playback gets cleared
            policy: Turn policy
            interrupt_cooldown_ms: Commit suppression window after an interrupt
            drop_audio_during_cooldown: Also stop forwarding audio in that window
            barge_in_enabled: Interrupt on endpoint-detected speech
            time_fn: Wall clock for the cooldown, in seconds
        """
        self._session = session
        self._upstream = upstream
        self._transport = transport
        self._policy = policy
        self._cooldown_s = interrupt_cooldown_ms / 1000.0
        self._drop_audio_during_cooldown = drop_audio_during_cooldown
        self._barge_in_enabled = barge_in_enabled
        self._time_fn = time_fn

        self.commit_state = CommitState()
        self._responding = False
        self._cooldown_until = 0.0
        self._interrupted_item_id: Optional[str] = None

        # Stats
        self._frames_forwarded = 0
        self._frames_dropped = 0
        self._commits = 0
        self._interrupts = 0
        self._truncations = 0

        self._logger = structlog.get_logger(__name__).bind(session_id=session.id)

    @property
    def policy(self) -> TurnPolicy:
        return self._policy

    @property
    def responding(self) -> bool:
        """Whether the endpoint is generating a response."""
        return self._responding

    @property
    def cooldown_active(self) -> bool:
        return self._time_fn() < self._cooldown_until

    @property
    def ai_speaking(self) -> bool:
        """Whether assistant audio is being played downstream."""
        return self._session.playback.in_flight or self._transport.has_pending_playback

    def get_stats(self) -> dict:
        return {
            "policy": self._policy.name,
            "frames_forwarded": self._frames_forwarded,
            "frames_dropped": self._frames_dropped,
            "commits": self._commits,
            "interrupts": self._interrupts,
            "truncations": self._truncations,
        }

    async def on_audio(self, pcm16_24k: bytes) -> None:
        """Handle one captured frame (PCM16 @ 24kHz).

        The frame is forwarded upstream whatever its classification, unless
        audio is dropped during the interrupt cooldown.
        """
        decision = self._policy.on_frame(pcm16_24k, self.commit_state, self.ai_speaking)

        if decision.barge_in:
            await self.interrupt("local_speech")

        if self._drop_audio_during_cooldown and self._policy.commits_locally and self.cooldown_active:
            self._frames_dropped += 1
        else:
            await self._upstream.send_audio(pcm16_24k)
            self._frames_forwarded += 1

        if decision.end_of_turn:
            await self._maybe_commit()

    async def _maybe_commit(self) -> None:
        if self.cooldown_active:
            self._logger.debug("Commit suppressed, interrupt cooldown active")
            return
        if self._responding:
            self._logger.debug("Commit suppressed, response in progress")
            return

        await self._upstream.commit()
        self._commits += 1

        state = self.commit_state
        self._logger.info("Turn committed", silence_frames=state.silence_frames, commits=self._commits)

        state.has_committed = True
        state.has_user_spoken = False
        state.silence_frames = 0

    async def on_client_interrupt(self) -> None:
        """Explicit interrupt from the client, always honoured.

        Audio the client captured before interrupting is discarded upstream
        so it is not committed as part of the next turn.
        """
        await self.interrupt("client")
        await self._upstream.clear_input_buffer()

    async def on_upstream_speech_started(self) -> None:
        """Endpoint detected user speech onset.

        Always cancels and clears: audio generated before the onset may still
        be buffered downstream even after the response is done.
        """
        if not self._barge_in_enabled:
            return
        await self.interrupt("upstream_speech")

    def on_response_started(self) -> None:
        self._responding = True

    def on_response_done(self) -> None:
        """The endpoint finished generating.

        The utterance stays tracked while the downstream party may still be
        playing it; only a transport that acknowledges playback can end it here.
        """
        self._responding = False
        self._interrupted_item_id = None
        if self._transport.tracks_playback and not self._transport.has_pending_playback:
            self._session.playback.reset()

    def on_playback_drained(self) -> None:
        """Downstream acknowledged everything sent: natural end of playback."""
        if not self._responding:
            self._session.playback.reset()

    def on_audio_delta(self, item_id: Optional[str], pcm16_24k: bytes) -> bool:
        """Record an assistant audio chunk about to be sent downstream.

        Args:
            item_id: Assistant item the chunk belongs to
            pcm16_24k: The chunk, PCM16 @ 24kHz

        Returns:
            False if the chunk belongs to an item that was interrupted and
            must not be played
        """
        if item_id is not None and item_id == self._interrupted_item_id:
            return False
        duration_ms = len(pcm16_24k) * 1000 // (2 * AudioConstants.AI_RATE)
        self._session.playback.start_chunk(item_id, self._session.clock.now(), duration_ms)
        return True

    async def interrupt(self, reason: str) -> None:
        """Cancel, truncate and clear the assistant's current utterance.

        Safe to call repeatedly: without an assistant item in flight it only
        cancels and clears, so no second truncate is ever sent.

        Args:
            reason: What triggered the interrupt (for logging)
        """
        self._interrupts += 1
        playback = self._session.playback

        await self._upstream.cancel_response()

        item_id = playback.last_assistant_item_id
        if item_id is None:
            await self._transport.clear_playback()
            playback.reset()
            self.commit_state.reset()
            self._logger.debug("Interrupt with no assistant item", reason=reason)
        else:
            elapsed_ms = playback.elapsed_ms(self._session.clock.now())

            await self._upstream.truncate(item_id, elapsed_ms)
            self._truncations += 1
            playback.last_assistant_item_id = None
            self._interrupted_item_id = item_id

            await self._transport.clear_playback()
            playback.reset()
            self.commit_state.reset()

            self._logger.info(
                "Assistant interrupted",
                reason=reason,
                item_id=item_id,
                audio_end_ms=elapsed_ms
            )

        self._responding = False
        self._cooldown_until = self._time_fn() + self._cooldown_s
