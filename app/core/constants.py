"""Audio processing constants."""


class AudioConstants:
    """Audio format constants for telephony, browser and AI processing."""

    # Sample rates
    TELEPHONY_RATE = 8000   # μ-law media streams
    AI_RATE = 24000         # Realtime AI endpoint PCM16 (input and output)
    BROWSER_CAPTURE_RATE = 48000  # AudioWorklet capture before downsampling

    # Frame timing
    FRAME_MS = 20  # 20ms frame duration

    # Frame sizes
    ULAW_FRAME_SIZE = 160        # μ-law @ 8kHz: (8000 * 20 * 1) / 1000 = 160 bytes
    PCM16_24K_FRAME_SIZE = 960   # PCM16 @ 24kHz: (24000 * 20 * 2) / 1000 = 960 bytes

    # Mock response tone
    MOCK_TONE_HZ = 440
    MOCK_TONE_SECONDS = 0.5
    MOCK_TONE_AMPLITUDE = 8000

    # Logging intervals
    LOG_INTERVAL_FRAMES = 50   # Log every 50 frames (1 second @ 20ms)
    LOG_INTERVAL_STATS = 100   # Stats every 100 frames (2 seconds @ 20ms)


class TwilioConstants:
    """Telephony media stream wire constants."""

    MARK_NAME = "responsePart"
    INBOUND_TRACK = "inbound"
