#!/usr/bin/env python3
"""Persistent FireRedASR service: the model is loaded once and reused.

Usage: ``firered_service.py <port>``. Listens on 127.0.0.1 only.
"""

import argparse
import os
import sys
import tempfile
import threading
from collections import OrderedDict

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse

from firered_correct import preserve_original_case, recognize

MODEL_DIR = os.environ.get("ML_SIDECAR_MODEL_DIR", "")
MAX_CACHED_AUDIO = 3

app = FastAPI()
_model_lock = threading.Lock()
_model = None
_audio_cache_lock = threading.Lock()
# path -> (mtime, AudioSegment); oldest first
_audio_cache = OrderedDict()
_server = None


def load_model():
    global _model
    with _model_lock:
        if _model is None:
            if not MODEL_DIR or not os.path.isdir(MODEL_DIR):
                raise RuntimeError("FireRedASR-AED-L model is not downloaded")
            from firered_correct import load_model as _load

            print("Loading FireRedASR model", file=sys.stderr, flush=True)
            _model = _load(MODEL_DIR)
            print("Model loaded", file=sys.stderr, flush=True)
        return _model


def cached_audio(path):
    """Decode ``path`` once; reload only when its mtime changes."""
    from pydub import AudioSegment

    try:
        mtime = os.path.getmtime(path)
    except OSError:
        mtime = 0
    with _audio_cache_lock:
        cached = _audio_cache.get(path)
        if cached is not None and cached[0] == mtime:
            return cached[1]
    audio = AudioSegment.from_file(path)
    with _audio_cache_lock:
        _audio_cache[path] = (mtime, audio)
        _audio_cache.move_to_end(path)
        while len(_audio_cache) > MAX_CACHED_AUDIO:
            _audio_cache.popitem(last=False)
    return audio


@app.get("/health")
def health():
    return PlainTextResponse("ok")


@app.get("/preload")
def preload():
    try:
        load_model()
    except Exception as exc:  # pylint: disable=broad-exception-caught
        return PlainTextResponse(str(exc), status_code=500)
    return PlainTextResponse("model loaded")


@app.get("/preload_audio")
def preload_audio(path: str = ""):
    if not path:
        return PlainTextResponse("missing path", status_code=400)
    try:
        cached_audio(path)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        return PlainTextResponse(str(exc), status_code=500)
    return PlainTextResponse("audio cached")


@app.post("/")
def correct(params: dict):
    try:
        original = params["original_text"]
        audio = cached_audio(params["audio_path"])
        chunk = audio[params["start_ms"] : params["end_ms"]]
        chunk = chunk.set_channels(1).set_frame_rate(16000)
        feat_extractor, model, tokenizer, use_gpu = load_model()
        with tempfile.TemporaryDirectory() as tmp_dir:
            chunk_file = os.path.join(tmp_dir, "chunk.wav")
            chunk.export(chunk_file, format="wav")
            corrected = recognize(chunk_file, feat_extractor, model, tokenizer, use_gpu)
        if params.get("preserve_case", True) and corrected:
            corrected = preserve_original_case(original, corrected)
    except KeyError as exc:
        return JSONResponse({"error": f"missing field {exc}"}, status_code=400)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        return JSONResponse({"error": str(exc)}, status_code=500)
    return {
        "original": original,
        "corrected": corrected,
        "has_diff": original.strip() != corrected.strip(),
    }


@app.post("/shutdown")
def shutdown():
    if _server is not None:
        _server.should_exit = True
    return PlainTextResponse("bye")


def main():
    global _server
    parser = argparse.ArgumentParser(description="FireRedASR correction service")
    parser.add_argument("port", type=int, nargs="?", default=18765)
    args = parser.parse_args()
    config = uvicorn.Config(app, host="127.0.0.1", port=args.port, log_level="warning")
    _server = uvicorn.Server(config)
    print(f"FireRedASR service listening on port {args.port}", file=sys.stderr)
    _server.run()


if __name__ == "__main__":
    main()
