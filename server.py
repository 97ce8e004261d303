"""
Team Voices MCP Server

A Model Context Protocol server that speaks agent-team inbox messages aloud
with local TTS (Kokoro ONNX). Several servers may share one state directory;
only the elected leader plays audio, the rest forward to it. Runs over stdio
transport.

Usage:
    python server.py          # Normal MCP server mode
    python server.py --test   # Quick smoke test
"""

import asyncio
import atexit
import signal
import sys
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from shared import TTSEngineError, VOICE_POOL, get_logger, set_log_level
from config import load_config, AppConfig
from team_voices import TeamVoicesService

logger = get_logger("server")

# ─── Global State ─────────────────────────────────────────────────────────────

# Initialized in main() before the MCP loop starts
_tts_engine = None
_audio_player = None
_service: TeamVoicesService = None


@asynccontextmanager
async def _lifespan(server: FastMCP):
    """Start the service inside the MCP event loop and stop it on exit."""
    if _service is not None:
        role = await _service.start()
        logger.info(f"Server ready (role: {role.value if role else 'standalone'})")
    try:
        yield {}
    finally:
        if _service is not None:
            await _service.stop()


mcp = FastMCP("team-voices", lifespan=_lifespan)


# ─── Startup / Shutdown ──────────────────────────────────────────────────────

def _init_tts(config: AppConfig):
    """Initialize TTS engine and audio player."""
    global _tts_engine, _audio_player

    from tts.kokoro_engine import KokoroEngine
    from tts.audio_player import AudioPlayer

    _audio_player = AudioPlayer(config.tts.audio_player)
    try:
        _tts_engine = KokoroEngine(config.tts.model_path, config.tts.voices_path, config.tts.speed)
        logger.info("TTS subsystem initialized")
    except TTSEngineError as e:
        logger.error(f"TTS initialization failed: {e}")
        _tts_engine = None


async def _synthesize(text: str, voice_id: str, output_path: str) -> None:
    if _tts_engine is None:
        raise TTSEngineError("TTS engine not loaded")
    await _tts_engine.synthesize_to_file(text, voice_id, output_path)


async def _play(path: str) -> None:
    await _audio_player.play(path)


def _init_service(config: AppConfig):
    """Wire registry, queue, watcher and coordinator together."""
    global _service
    _service = TeamVoicesService(config, synthesize=_synthesize, play=_play)


def _shutdown():
    """Synchronous cleanup: stop playback, save registry, release the socket."""
    logger.info("Shutting down...")

    if _audio_player is not None:
        _audio_player.stop()

    if _service is not None:
        try:
            _service.registry.save()
        except OSError as e:
            logger.error(f"Failed to save registry on shutdown: {e}")
        _service.coordinator.release()


# ─── MCP Tools ────────────────────────────────────────────────────────────────

@mcp.tool()
async def speak(text: str, voice: str = "") -> dict:
    """Queue text for text-to-speech playback.

    Args:
        text: Text to speak.
        voice: Voice name from the pool or a Kokoro voice ID (optional).
    """
    if _service is None:
        return {"queued": False, "error": "service_unavailable"}
    return _service.speak(text, voice or None)


@mcp.tool()
async def team_voices_status() -> dict:
    """Show current voice assignments, queue state, leader role and mute status."""
    if _service is None:
        return {"error": "service_unavailable"}
    return _service.status()


@mcp.tool()
async def team_voices_assign(agent: str, voice: str) -> dict:
    """Assign a specific voice to a team agent.

    Args:
        agent: Agent name.
        voice: Voice name from the pool or a Kokoro voice ID.
    """
    if _service is None:
        return {"error": "service_unavailable"}
    assigned = _service.assign_voice(agent, voice)
    return {"agent": agent, "voice": assigned.name, "voiceId": assigned.id}


@mcp.tool()
async def team_voices_mute(muted: bool) -> dict:
    """Mute or unmute all voice output.

    Args:
        muted: True to mute, false to unmute.
    """
    if _service is None:
        return {"error": "service_unavailable"}
    return {"muted": _service.set_muted(muted)}


@mcp.tool()
async def team_voices_test(voice: str) -> dict:
    """Test a voice with sample text. Plays even while muted.

    Args:
        voice: Voice name from the pool or a Kokoro voice ID.
    """
    if _service is None:
        return {"error": "service_unavailable"}
    return _service.test_voice(voice)


# ─── Server Lifecycle ─────────────────────────────────────────────────────────

def _run_smoke_test():
    """Quick smoke test: load the engine, synthesize and play one sentence."""
    import os
    import tempfile

    logger.info("Running smoke test...")
    config = load_config()
    _init_tts(config)

    results = []
    if _tts_engine is None or not _tts_engine.is_loaded():
        logger.error("TTS: FAILED")
        print("TTS: FAILED", file=sys.stderr)
        return
    results.append("TTS: OK")

    voice = VOICE_POOL[0]
    fd, path = tempfile.mkstemp(suffix=".wav")
    os.close(fd)
    try:
        result = _tts_engine.write_wav("Hello, this is a smoke test.", voice.id, path)
        logger.info(f"Synthesis: OK ({result.duration_ms:.0f}ms audio in {result.synthesis_ms:.0f}ms)")
        results.append("Synthesis: OK")
        asyncio.run(_audio_player.play(path))
        results.append("Playback: OK")
    except Exception as e:
        logger.error(f"Smoke test failed: {e}")
        results.append(f"FAILED: {e}")
    finally:
        os.unlink(path)

    print("\n".join(results), file=sys.stderr)


def main():
    """Entry point."""
    if "--test" in sys.argv:
        _run_smoke_test()
        return

    config = load_config()
    set_log_level(config.log_level)

    logger.info("Starting Team Voices MCP Server...")

    _init_tts(config)
    if _tts_engine is None:
        logger.warning("TTS failed to load. Items played by this process will be skipped.")
    _init_service(config)

    # Register shutdown handlers
    def handle_signal(signum, frame):
        _shutdown()
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)
    atexit.register(_shutdown)

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
