#!/usr/bin/env python3
"""Fetch a faster-whisper model into the Hugging Face hub cache.

Prints ``PROGRESS:<pct>`` per file and ``SUCCESS`` at the end. The cache
root comes from ``HF_HUB_CACHE``.
"""

import argparse
import os
import sys

os.environ.setdefault("HF_HUB_DISABLE_SYMLINKS_WARNING", "1")

MODEL_REPOS = {
    size: f"Systran/faster-whisper-{size}"
    for size in ("tiny", "base", "small", "medium", "large-v2", "large-v3")
}


def download_model(model):
    from huggingface_hub import hf_hub_download, list_repo_files

    repo_id = MODEL_REPOS.get(model)
    if repo_id is None:
        raise ValueError(f"unknown model '{model}'; known: {sorted(MODEL_REPOS)}")
    print(f"Downloading {model} ({repo_id})", flush=True)
    print("PROGRESS:0", flush=True)
    files = list_repo_files(repo_id)
    for index, filename in enumerate(files):
        print(f"PROGRESS:{index / len(files) * 100:.1f}:{filename}", flush=True)
        hf_hub_download(repo_id=repo_id, filename=filename)
    print("PROGRESS:100", flush=True)


def main():
    parser = argparse.ArgumentParser(description="Download a faster-whisper model")
    parser.add_argument("--model", required=True, choices=sorted(MODEL_REPOS))
    args = parser.parse_args()
    try:
        download_model(args.model)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        print(f"ERROR: download failed: {exc}", file=sys.stderr, flush=True)
        sys.exit(1)
    print("SUCCESS", flush=True)


if __name__ == "__main__":
    main()
