#!/usr/bin/env python3
"""Re-recognize every subtitle cue with FireRedASR and report corrections.

Progress is written as JSON to the file named by ``FIRERED_PROGRESS_FILE``;
the result goes to ``--output``. Failures print ``{"error": ...}`` on stderr
and exit with status 1.
"""

import argparse
import json
import os
import re
import sys
import tempfile

PROGRESS_FILE = os.environ.get("FIRERED_PROGRESS_FILE", "")
MODEL_DIR = os.environ.get("ML_SIDECAR_MODEL_DIR", "")

# Percent reserved for parsing and model loading; cues fill the rest.
LOAD_SPAN = 5.0


def emit_progress(progress, current, total, text, device=None):
    if not PROGRESS_FILE:
        return
    message = {
        "progress": progress,
        "current": current,
        "total": total,
        "text": text,
        "device_info": device is not None,
        "device": device or "",
    }
    tmp_path = PROGRESS_FILE + ".tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(message, fh, ensure_ascii=False)
        os.replace(tmp_path, PROGRESS_FILE)
    except OSError as exc:
        print(f"progress write failed: {exc}", file=sys.stderr)


def parse_srt_time(value):
    """``00:00:01,500`` -> 1500 milliseconds."""
    hours, minutes, seconds, millis = (
        int(part) for part in value.strip().replace(",", ":").split(":")
    )
    return ((hours * 60 + minutes) * 60 + seconds) * 1000 + millis


def parse_srt(path):
    with open(path, "r", encoding="utf-8") as fh:
        content = fh.read()
    entries = []
    for block in re.split(r"\n\s*\n", content.strip()):
        lines = block.strip().splitlines()
        if len(lines) < 3:
            continue
        try:
            start, end = lines[1].split(" --> ")
            entries.append(
                {
                    "id": int(lines[0]),
                    "start_ms": parse_srt_time(start),
                    "end_ms": parse_srt_time(end),
                    "text": "\n".join(lines[2:]),
                }
            )
        except ValueError:
            continue
    return entries


def preserve_original_case(original, corrected):
    """Restore the original casing of ASCII letters.

    The recognizer upper-cases Latin letters. When the corrected text holds
    the same letter sequence as the original (ignoring case), each letter
    takes back its original case; otherwise the correction is returned as is.
    """
    if not original or not corrected:
        return corrected
    original_letters = [ch for ch in original if ch.isascii() and ch.isalpha()]
    positions = [
        idx for idx, ch in enumerate(corrected) if ch.isascii() and ch.isalpha()
    ]
    if len(original_letters) != len(positions):
        return corrected
    if "".join(original_letters).lower() != "".join(
        corrected[idx] for idx in positions
    ).lower():
        return corrected
    result = list(corrected)
    for letter, idx in zip(original_letters, positions):
        result[idx] = letter.upper() if letter.isupper() else letter.lower()
    return "".join(result)


def load_model(model_dir):
    emit_progress(1, 0, 0, "Loading PyTorch")
    import torch
    from fireredasr.data.asr_feat import ASRFeatExtractor
    from fireredasr.models.fireredasr_aed import FireRedAsrAed
    from fireredasr.tokenizer.aed_tokenizer import ChineseCharEnglishSpmTokenizer

    # Checkpoints pickle argparse.Namespace; torch>=2.6 refuses it by default.
    torch.serialization.add_safe_globals([argparse.Namespace])
    use_gpu = torch.cuda.is_available()
    if use_gpu:
        name = torch.cuda.get_device_name(0)
        memory = torch.cuda.get_device_properties(0).total_memory / (1024**3)
        device = f"cuda:{name}:{memory:.1f}GB"
        label = f"CUDA ({name})"
    else:
        device = "cpu::"
        label = "CPU"
    emit_progress(2, 0, 0, f"Using device: {label}", device=device)

    emit_progress(2.5, 0, 0, "Loading feature extractor")
    feat_extractor = ASRFeatExtractor(os.path.join(model_dir, "cmvn.ark"))

    emit_progress(3, 0, 0, "Loading model weights")
    package = torch.load(
        os.path.join(model_dir, "model.pth.tar"),
        map_location=lambda storage, _loc: storage,
        weights_only=False,
    )
    model = FireRedAsrAed.from_args(package["args"])
    model.load_state_dict(package["model_state_dict"], strict=True)
    model.eval()
    if use_gpu:
        emit_progress(3.5, 0, 0, "Moving model to GPU")
        model = model.cuda()

    emit_progress(4, 0, 0, "Loading tokenizer")
    tokenizer = ChineseCharEnglishSpmTokenizer(
        os.path.join(model_dir, "dict.txt"),
        os.path.join(model_dir, "train_bpe1000.model"),
    )
    return feat_extractor, model, tokenizer, use_gpu


def recognize(chunk_file, feat_extractor, model, tokenizer, use_gpu):
    feats, lengths, _ = feat_extractor([chunk_file])
    if use_gpu:
        feats = feats.cuda()
        lengths = lengths.cuda()
    hyps = model.transcribe(
        feats,
        lengths,
        beam_size=1,
        nbest=1,
        decode_max_len=0,
        softmax_smoothing=1.0,
        length_penalty=0.0,
        eos_penalty=1.0,
    )
    if not hyps:
        return ""
    token_ids = [int(token) for token in hyps[0][0]["yseq"].cpu()]
    return tokenizer.detokenize(token_ids).strip()


def correct_subtitles(srt_path, audio_path, preserve_case=True):
    from pydub import AudioSegment

    emit_progress(0.2, 0, 0, "Parsing subtitles")
    entries = parse_srt(srt_path)
    if not entries:
        return {"entries": []}
    emit_progress(0.3, 0, 0, "Loading audio")
    audio = AudioSegment.from_file(audio_path)

    if not MODEL_DIR or not os.path.isdir(MODEL_DIR):
        raise RuntimeError("FireRedASR-AED-L model is not downloaded")
    feat_extractor, model, tokenizer, use_gpu = load_model(MODEL_DIR)

    total = len(entries)
    emit_progress(LOAD_SPAN, 0, total, f"Model loaded, correcting {total} cues")
    results = []
    with tempfile.TemporaryDirectory() as tmp_dir:
        for index, entry in enumerate(entries, start=1):
            preview = entry["text"][:30].replace("\n", " ")
            emit_progress(
                LOAD_SPAN + index / total * (100 - LOAD_SPAN), index, total, preview
            )
            original = entry["text"]
            chunk = audio[entry["start_ms"] : entry["end_ms"]]
            chunk = chunk.set_channels(1).set_frame_rate(16000)
            chunk_file = os.path.join(tmp_dir, f"chunk_{index}.wav")
            chunk.export(chunk_file, format="wav")
            try:
                corrected = recognize(
                    chunk_file, feat_extractor, model, tokenizer, use_gpu
                )
                if preserve_case and corrected:
                    corrected = preserve_original_case(original, corrected)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                print(f"cue {entry['id']} failed: {exc}", file=sys.stderr)
                corrected = original
            finally:
                os.remove(chunk_file)
            final_text = corrected or original
            results.append(
                {
                    "id": entry["id"],
                    "start_ms": entry["start_ms"],
                    "end_ms": entry["end_ms"],
                    "original": original,
                    "corrected": final_text,
                    "has_diff": original.strip() != final_text.strip(),
                }
            )
    return {"entries": results}


def main():
    parser = argparse.ArgumentParser(description="FireRedASR subtitle correction")
    parser.add_argument("srt_path")
    parser.add_argument("audio_path")
    parser.add_argument("--language", default="zh")
    parser.add_argument("--output")
    parser.add_argument("--preserve-case", dest="preserve_case", action="store_true")
    parser.add_argument(
        "--no-preserve-case", dest="preserve_case", action="store_false"
    )
    parser.set_defaults(preserve_case=True)
    args = parser.parse_args()
    try:
        result = correct_subtitles(args.srt_path, args.audio_path, args.preserve_case)
    except Exception as exc:  # pylint: disable=broad-exception-caught
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        sys.exit(1)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as fh:
            json.dump(result, fh, ensure_ascii=False, indent=2)
    else:
        print(json.dumps(result, ensure_ascii=False))


if __name__ == "__main__":
    main()
