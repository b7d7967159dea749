#!/usr/bin/env python3
"""Transcribe one audio file with SenseVoice.

Speech is segmented with the fsmn VAD model, each segment is recognized
separately. Progress goes to stderr as JSON lines of ``type == "progress"``,
the device description to stdout as ``DEVICE_INFO:<kind>:<name>:<memory>``.
"""

import argparse
import io
import json
import os
import re
import sys
import tempfile

if sys.platform == "win32":
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding="utf-8", errors="replace")

MODEL_DIR = os.environ.get("ML_SIDECAR_MODEL_DIR", "")

_TAG_RE = re.compile(r"<\|[^|]+\|>")
_DISALLOWED_RE = re.compile(
    r"[^\u4e00-\u9fff\u3040-\u309f\u30a0-\u30ff\uac00-\ud7af"
    r"a-zA-Z0-9\s.,!?;:\uff0c\u3002\uff01\uff1f\uff1b\uff1a\u3001"
    r"\"'\u201c\u201d\u2018\u2019\uff08\uff09\-]+"
)
_TRAILING_STOP_RE = re.compile(r"[\u3002.]+$")


def emit_progress(percent, status, message=""):
    line = {
        "type": "progress",
        "current": percent,
        "total": 100,
        "percent": percent,
        "status": status,
        "message": message,
    }
    sys.stderr.write(json.dumps(line, ensure_ascii=False) + "\n")
    sys.stderr.flush()


def device_info(torch):
    if torch.cuda.is_available():
        name = torch.cuda.get_device_name(0)
        memory = torch.cuda.get_device_properties(0).total_memory / (1024**3)
        return f"cuda:{name}:{memory:.1f}GB"
    return "cpu::"


def clean_text(text):
    """Drop ``<|tag|>`` markers, unsupported symbols and a final full stop."""
    text = _TAG_RE.sub("", text)
    text = _DISALLOWED_RE.sub("", text).strip()
    return _TRAILING_STOP_RE.sub("", text)


def transcribe(audio_path, language="auto"):
    import torch
    from funasr import AutoModel
    from funasr.utils.postprocess_utils import rich_transcription_postprocess
    from pydub import AudioSegment

    device = "cuda" if torch.cuda.is_available() else "cpu"
    print(f"DEVICE_INFO:{device_info(torch)}", flush=True)

    emit_progress(0, "loading", "Loading VAD model")
    vad_model = AutoModel(
        model="fsmn-vad",
        max_single_segment_time=15000,
        max_end_silence_time=250,
        device=device,
    )
    emit_progress(5, "loading", "Loading SenseVoice model")
    model = AutoModel(
        model=MODEL_DIR or "iic/SenseVoiceSmall",
        trust_remote_code=True,
        device=device,
    )

    emit_progress(10, "transcribing", "Detecting speech")
    vad_result = vad_model.generate(input=audio_path)
    if not vad_result or not vad_result[0].get("value"):
        return {"segments": []}
    spans = vad_result[0]["value"]
    audio = AudioSegment.from_file(audio_path)

    segments = []
    with tempfile.TemporaryDirectory() as tmp_dir:
        for index, (start_ms, end_ms) in enumerate(spans):
            emit_progress(
                15 + int(index / len(spans) * 80), "transcribing", "Recognizing speech"
            )
            chunk_file = os.path.join(tmp_dir, f"{start_ms}_{end_ms}.wav")
            audio[start_ms:end_ms].export(chunk_file, format="wav")
            result = model.generate(input=chunk_file, language=language, use_itn=True)
            os.remove(chunk_file)
            text = result[0].get("text", "") if result else ""
            if not text:
                continue
            try:
                text = rich_transcription_postprocess(text)
            except (ValueError, KeyError, IndexError):
                pass
            text = clean_text(text)
            if text:
                segments.append(
                    {
                        "start": round(start_ms / 1000.0, 3),
                        "end": round(end_ms / 1000.0, 3),
                        "text": text,
                    }
                )
    emit_progress(100, "completed", "Transcription finished")
    return {"segments": segments}


def main():
    parser = argparse.ArgumentParser(description="SenseVoice transcription")
    parser.add_argument("audio_path")
    parser.add_argument("--language", default="auto")
    parser.add_argument("--output")
    args = parser.parse_args()
    try:
        result = transcribe(args.audio_path, args.language)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        sys.exit(1)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as fh:
            json.dump(result, fh, ensure_ascii=False)
    else:
        print(json.dumps(result, ensure_ascii=False))


if __name__ == "__main__":
    main()
