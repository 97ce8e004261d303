"""Kokoro ONNX TTS engine wrapper."""

import asyncio
import time

import soundfile as sf

from shared import SynthesisResult, TTSEngineError, ALL_VOICE_IDS, DEFAULT_SPEED, get_logger

logger = get_logger("tts.kokoro")


class KokoroEngine:
    """Wrapper around kokoro-onnx for text-to-speech synthesis."""

    def __init__(self, model_path: str, voices_path: str, speed: float = DEFAULT_SPEED) -> None:
        self._loaded = False
        self._speed = speed
        try:
            import kokoro_onnx
            self._model = kokoro_onnx.Kokoro(model_path, voices_path)
            self._loaded = True
            logger.info("Kokoro TTS engine loaded successfully")
        except Exception as e:
            raise TTSEngineError(f"Failed to load Kokoro model: {e}") from e

    def synthesize(self, text: str, voice_id: str, speed: float | None = None) -> SynthesisResult:
        """Synthesize text to audio samples.

        Args:
            text: The text to synthesize.
            voice_id: A valid Kokoro voice ID (e.g. "am_eric").
            speed: Speech speed multiplier (defaults to the engine's speed).

        Returns:
            SynthesisResult with samples, sample_rate, duration_ms, synthesis_ms.

        Raises:
            TTSEngineError: If voice_id is invalid or synthesis fails.
        """
        if voice_id not in ALL_VOICE_IDS:
            raise TTSEngineError(
                f"Invalid voice_id '{voice_id}'. Use a valid voice from ALL_VOICE_IDS."
            )

        if not self._loaded:
            raise TTSEngineError("Kokoro engine is not loaded")

        speed = self._speed if speed is None else speed
        try:
            start = time.perf_counter()
            samples, sample_rate = self._model.create(text, voice=voice_id, speed=speed)
            synthesis_ms = (time.perf_counter() - start) * 1000

            duration_ms = (len(samples) / sample_rate) * 1000

            return SynthesisResult(
                samples=samples,
                sample_rate=sample_rate,
                duration_ms=duration_ms,
                synthesis_ms=synthesis_ms,
            )
        except Exception as e:
            raise TTSEngineError(f"Synthesis failed: {e}") from e

    def write_wav(self, text: str, voice_id: str, output_path: str) -> SynthesisResult:
        """Synthesize text and write it to output_path as a WAV file."""
        result = self.synthesize(text, voice_id)
        try:
            sf.write(output_path, result.samples, result.sample_rate)
        except Exception as e:
            raise TTSEngineError(f"Failed to write audio to {output_path}: {e}") from e
        return result

    async def synthesize_to_file(self, text: str, voice_id: str, output_path: str) -> SynthesisResult:
        """Async collaborator for the playback queue.

        Synthesis is CPU-bound, so it runs in the default executor to keep
        the event loop responsive.
        """
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None, self.write_wav, text, voice_id, output_path
        )
        logger.debug(
            f"Synthesized {result.duration_ms:.0f}ms of audio in {result.synthesis_ms:.0f}ms"
        )
        return result

    def is_loaded(self) -> bool:
        """Return whether the engine is loaded and ready."""
        return self._loaded
