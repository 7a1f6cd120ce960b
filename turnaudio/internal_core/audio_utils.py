from __future__ import annotations

import io
import shutil
import subprocess
import uuid
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class DecodedAudio:
    samples: np.ndarray  # mono int16
    sample_rate: int

    @property
    def duration_ms(self) -> int:
        if not self.sample_rate:
            return 0
        return int(self.samples.size * 1000 // self.sample_rate)


def _which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def _safe_unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except Exception:
        pass


def is_wav_bytes(data: bytes) -> bool:
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE"


def enforce_max_duration(duration_ms: int, max_allowed_sec: float) -> None:
    if duration_ms / 1000.0 > max_allowed_sec:
        raise ValueError(
            f"Audio too long ({duration_ms / 1000.0:.1f}s), max allowed is {max_allowed_sec:.1f}s"
        )


def _read_wav_pcm16_mono(data: bytes) -> DecodedAudio:
    with wave.open(io.BytesIO(data), "rb") as wf:
        channels = wf.getnchannels()
        rate = wf.getframerate()
        width = wf.getsampwidth()
        raw = wf.readframes(wf.getnframes())
    if width != 2:
        raise ValueError(f"Expected 16-bit PCM WAV, got sampwidth={width}")
    samples = np.frombuffer(raw, dtype="<i2")
    if channels > 1:
        usable = samples.size - (samples.size % channels)
        frames = samples[:usable].reshape(-1, channels).astype(np.int32)
        samples = frames.mean(axis=1).round().astype("<i2")
    return DecodedAudio(samples=samples, sample_rate=int(rate))


def _miniaudio_decode(data: bytes, sample_rate: int) -> DecodedAudio:
    try:
        import miniaudio  # type: ignore
    except Exception:
        raise ValueError("Decoding non-WAV audio requires `ffmpeg` or the Python dependency `miniaudio`.")

    try:
        decoded = miniaudio.decode(
            data,
            output_format=miniaudio.SampleFormat.SIGNED16,
            nchannels=1,
            sample_rate=sample_rate,
        )
    except Exception as e:
        raise ValueError(f"Audio decode failed: {e}")
    samples = np.frombuffer(decoded.samples.tobytes(), dtype="<i2")
    return DecodedAudio(samples=samples, sample_rate=int(sample_rate))


def _ffmpeg_to_wav(ffmpeg: str, data: bytes, tmp_dir: Path, prefix: str, sample_rate: int) -> bytes:
    tmp_dir.mkdir(parents=True, exist_ok=True)
    token = uuid.uuid4().hex
    in_path = tmp_dir / f"{prefix}_merged_{token}.bin"
    out_path = tmp_dir / f"{prefix}_merged_{token}.wav"
    in_path.write_bytes(data)
    cmd = [
        ffmpeg,
        "-y",
        "-i",
        str(in_path),
        "-ac",
        "1",
        "-ar",
        str(sample_rate),
        "-acodec",
        "pcm_s16le",
        str(out_path),
    ]
    try:
        subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        return out_path.read_bytes()
    except subprocess.CalledProcessError as e:
        stderr = (
            e.stderr.decode("utf-8", "ignore")
            if isinstance(e.stderr, (bytes, bytearray))
            else str(e.stderr)
        )
        raise ValueError(
            f"Audio decode failed via ffmpeg: {stderr.strip()[-300:] or 'unknown error'}"
        )
    finally:
        _safe_unlink(in_path)
        _safe_unlink(out_path)


def decode_to_pcm16_mono(
    data: bytes,
    tmp_dir: Path,
    prefix: str,
    *,
    sample_rate: int = 16000,
) -> DecodedAudio:
    """
    Decode a merged recording to mono 16-bit PCM.
    WAV input keeps its own sample rate; other containers go through ffmpeg
    when present, else `miniaudio`.
    """
    if not data:
        raise ValueError("Merged audio is empty.")
    if is_wav_bytes(data):
        try:
            return _read_wav_pcm16_mono(data)
        except (wave.Error, ValueError):
            # Non-PCM WAV payloads (float, a-law) still decode through ffmpeg.
            pass
    ffmpeg = _which("ffmpeg")
    if ffmpeg:
        return _read_wav_pcm16_mono(_ffmpeg_to_wav(ffmpeg, data, tmp_dir, prefix, sample_rate))
    return _miniaudio_decode(data, sample_rate)


def slice_ms(audio: DecodedAudio, begin_ms: int, end_ms: int) -> np.ndarray:
    start = int(begin_ms) * audio.sample_rate // 1000
    stop = int(end_ms) * audio.sample_rate // 1000
    start = max(0, min(start, audio.samples.size))
    stop = max(start, min(stop, audio.samples.size))
    return audio.samples[start:stop]


def encode_wav_bytes(samples: np.ndarray, sample_rate: int) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(np.asarray(samples, dtype="<i2").tobytes())
    return buf.getvalue()


def compute_rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    x = samples.astype(np.float32) / 32768.0
    return float(np.sqrt(np.mean(x * x)))
