from __future__ import annotations

import argparse
import json
from pathlib import Path

import numpy as np
import yaml

from monoreloc.dataset.tum import TumRgbSequence
from monoreloc.geom.camera import PinholeCamera
from monoreloc.modules.place_finder import make_place_finder
from monoreloc.modules.relpos import make_relpos_finder
from monoreloc.system.config import RelocConfig, load_yaml
from monoreloc.system.indexer import KeyframeIndexer
from monoreloc.system.logging_setup import get_logger, setup_logging
from monoreloc.system.policy import KeyframePolicy, RelocalizationPolicy
from monoreloc.system.relocalizer import MultipleRelocalizer
from monoreloc.system.result import RelocResult
from monoreloc.system.telemetry import Telemetry


log = get_logger("monoreloc.run_tum")


def _R_to_quat_xyzw(R: np.ndarray) -> np.ndarray:
    # Returns quaternion [x,y,z,w] from rotation matrix.
    m = R.astype(np.float64)
    trace = float(np.trace(m))
    if trace > 0.0:
        s = np.sqrt(trace + 1.0) * 2.0
        qw = 0.25 * s
        qx = (m[2, 1] - m[1, 2]) / s
        qy = (m[0, 2] - m[2, 0]) / s
        qz = (m[1, 0] - m[0, 1]) / s
    else:
        if m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
            s = np.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2]) * 2.0
            qw = (m[2, 1] - m[1, 2]) / s
            qx = 0.25 * s
            qy = (m[0, 1] + m[1, 0]) / s
            qz = (m[0, 2] + m[2, 0]) / s
        elif m[1, 1] > m[2, 2]:
            s = np.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2]) * 2.0
            qw = (m[0, 2] - m[2, 0]) / s
            qx = (m[0, 1] + m[1, 0]) / s
            qy = 0.25 * s
            qz = (m[1, 2] + m[2, 1]) / s
        else:
            s = np.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1]) * 2.0
            qw = (m[1, 0] - m[0, 1]) / s
            qx = (m[0, 2] + m[2, 0]) / s
            qy = (m[1, 2] + m[2, 1]) / s
            qz = 0.25 * s

    q = np.array([qx, qy, qz, qw], dtype=np.float64)
    n = np.linalg.norm(q) + 1e-12
    return q / n


def _write_relocalizations(rows: list[tuple[int, float, RelocResult]], out_path: str) -> None:
    """One line per query: idx ts found matched_id tx ty tz qx qy qz qw reason."""
    with open(out_path, "w", encoding="utf-8") as f:
        for idx, ts, res in rows:
            T = res.T_query_kf
            t = T[:3, 3]
            q = _R_to_quat_xyzw(T[:3, :3])
            mid = -1 if res.matched_id is None else res.matched_id
            f.write(
                f"{idx} {ts:.6f} {int(res.found)} {mid} "
                f"{t[0]:.6f} {t[1]:.6f} {t[2]:.6f} {q[0]:.6f} {q[1]:.6f} {q[2]:.6f} {q[3]:.6f} "
                f"{res.reason.value}\n"
            )


def build_relocalizer(raw_cfg: dict, telemetry: Telemetry | None = None) -> tuple[MultipleRelocalizer, RelocConfig]:
    cfg = RelocConfig.from_dict(raw_cfg)
    camera = PinholeCamera.from_dict(raw_cfg.get("camera"))
    reloc = MultipleRelocalizer(
        make_place_finder(cfg.place_finder, cfg.orb),
        make_relpos_finder(camera, cfg),
        config=cfg.relocalizer,
        telemetry=telemetry,
    )
    return reloc, cfg


def main() -> None:
    ap = argparse.ArgumentParser(description="Relocalize a TUM RGB sequence against its own keyframes")
    ap.add_argument("--config", type=str, default="configs/default.yaml")
    ap.add_argument("--tum_dir", type=str, required=True, help="Path to TUM sequence dir, e.g. .../freiburg1_xyz")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--log_every", type=int, default=50, help="Log progress every N frames")
    ap.add_argument("--async_index", action="store_true", help="Insert keyframes on a background thread")
    args = ap.parse_args()

    raw = load_yaml(args.config)
    setup_logging(raw.get("logging", {}).get("level"))
    log.info("config loaded", extra={"extra": {"path": args.config}})

    seq_name = raw.get("dataset", {}).get("sequence", Path(args.tum_dir).name)
    out_dir = Path(args.out_dir) / seq_name
    out_dir.mkdir(parents=True, exist_ok=True)

    telemetry = Telemetry()
    reloc, cfg = build_relocalizer(raw, telemetry)
    kf_policy = KeyframePolicy(cfg.pipeline)
    reloc_policy = RelocalizationPolicy(cfg.pipeline)

    seq = TumRgbSequence(args.tum_dir)
    log.info("sequence loaded", extra={"extra": {"dir": args.tum_dir, "frames": len(seq),
                                                 "groundtruth": seq.has_groundtruth}})

    ds = raw.get("dataset", {})
    max_frames = ds.get("max_frames", None)
    frames = seq.iter_frames(
        kf_policy.is_keyframe,
        levels=cfg.pipeline.pyramid_levels,
        start=int(ds.get("start", 0)),
        step=int(ds.get("step", 1)),
        max_frames=None if max_frames is None else int(max_frames),
    )

    indexer = KeyframeIndexer(reloc).start() if args.async_index else None
    rows: list[tuple[int, float, RelocResult]] = []
    n_found = 0
    try:
        for frame in frames:
            if frame.is_keyframe:
                if indexer is not None:
                    indexer.submit(frame)
                else:
                    reloc.add_frame(frame)
            elif reloc_policy.should_relocalize(frame.id, is_keyframe=False):
                res = reloc.relocalize(frame)
                rows.append((frame.id, float(frame.ts or 0.0), res))
                n_found += int(res.found)

            if args.log_every > 0 and frame.id > 0 and frame.id % args.log_every == 0:
                log.info("progress", extra={"extra": {"frame": frame.id, "keyframes": reloc.size(),
                                                      "queries": len(rows), "found": n_found}})
        if indexer is not None:
            indexer.flush()
    finally:
        if indexer is not None:
            indexer.stop()

    reloc_path = str(out_dir / "relocalizations.txt")
    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    _write_relocalizations(rows, reloc_path)

    with open(metrics_path, "w", encoding="utf-8") as f:
        json.dump(telemetry.snapshot(), f, indent=2)

    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(raw, f, sort_keys=False)

    log.info("done", extra={"extra": {"queries": len(rows), "found": n_found, "keyframes": reloc.size(),
                                      "relocalizations": reloc_path, "metrics": metrics_path}})


if __name__ == "__main__":
    main()
