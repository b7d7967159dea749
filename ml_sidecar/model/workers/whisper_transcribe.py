#!/usr/bin/env python3
"""Transcribe one audio file with faster-whisper.

Speaks the tagged stdout protocol: ``DEVICE_INFO:``, ``STATUS:loading``,
``STATUS:transcribing``, ``PROGRESS:<pct>:<preview>`` per segment and
``STATUS:completed``. Errors go to stderr and exit with status 1.
"""

import argparse
import json
import os
import sys

MODEL_DIR = os.environ.get("ML_SIDECAR_MODEL_DIR", "")


def log(message):
    print(message, flush=True)


def audio_duration(path):
    try:
        from pydub import AudioSegment

        return len(AudioSegment.from_file(path)) / 1000.0
    except Exception:  # pylint: disable=broad-exception-caught
        return 0.0


def pick_device(torch, requested):
    if requested == "auto":
        requested = "cuda" if torch.cuda.is_available() else "cpu"
    compute_type = "float16" if requested == "cuda" else "int8"
    return requested, compute_type


def transcribe(audio_path, model_name, language, device, output_path):
    import torch
    from faster_whisper import WhisperModel

    device, compute_type = pick_device(torch, device)
    if device == "cuda" and torch.cuda.is_available():
        name = torch.cuda.get_device_name(0)
        memory = torch.cuda.get_device_properties(0).total_memory / (1024**3)
        log(f"DEVICE_INFO:cuda:{name}:{memory:.1f}GB")
    else:
        log("DEVICE_INFO:cpu::")

    log("STATUS:loading")
    duration = audio_duration(audio_path)
    log(f"DURATION:{duration:.1f}")
    model = WhisperModel(
        MODEL_DIR or model_name, device=device, compute_type=compute_type
    )

    log("STATUS:transcribing")
    segments, info = model.transcribe(
        audio_path,
        language=None if language == "auto" else language,
        beam_size=5,
        vad_filter=True,
        vad_parameters={"min_silence_duration_ms": 500},
    )
    total = info.duration if info.duration and info.duration > 0 else duration or 1.0
    results = []
    for segment in segments:
        text = segment.text.strip()
        results.append({"start": segment.start, "end": segment.end, "text": text})
        log(f"PROGRESS:{min(segment.end / total * 100, 100.0):.1f}:{text[:30]}")

    result = {"segments": results, "language": info.language, "duration": info.duration}
    with open(output_path, "w", encoding="utf-8") as fh:
        json.dump(result, fh, ensure_ascii=False, indent=2)
    log("STATUS:completed")
    return result


def main():
    parser = argparse.ArgumentParser(description="faster-whisper transcription")
    parser.add_argument("audio_path")
    parser.add_argument("--model", default="base")
    parser.add_argument("--language", default="auto")
    parser.add_argument("--device", default="auto", choices=("auto", "cpu", "cuda"))
    parser.add_argument("--output", required=True)
    args = parser.parse_args()
    try:
        transcribe(args.audio_path, args.model, args.language, args.device, args.output)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        print(f"ERROR: {exc}", file=sys.stderr, flush=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
