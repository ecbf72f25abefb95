import argparse
import json
import logging
import sys
from pathlib import Path

import pandas as pd

from .checkpoint import read_manifest
from .config import NORMALIZATION_METHODS, AlignConfig, load_config
from .merge import DEFAULT_COLLISION_TOLERANCE, DirectoryNameResolver, ExactIdResolver, compile_runs
from .normalize import normalize_frame, normalize_rows
from .pipeline import run_alignment


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _add_align_parser(sub):
    p = sub.add_parser("align", help="Align one dataset (class subdirectories of per-pixel peak lists)")
    p.add_argument("root", type=str, help="Dataset root; one subdirectory per class")
    p.add_argument("--out-dir", required=True, type=str, help="Directory that receives the run checkpoint")
    p.add_argument("--config", type=str, default=None, help="YAML/JSON config file")
    p.add_argument("--name", type=str, default=None, help="Dataset name (default: root directory name)")
    p.add_argument("--mass-range", dest="mass_range", type=float, nargs=2, default=None, metavar=("LOWER", "UPPER"))
    p.add_argument("--method", dest="peak_alignment_method", choices=["clustering", "binning"], default=None)
    p.add_argument("--clust-h", dest="clust_h", type=float, default=None)
    p.add_argument("--int-method", dest="clust_int_method", choices=["sumints", "maxint"], default=None)
    p.add_argument("--normalization", dest="normalization_method", choices=list(NORMALIZATION_METHODS), default=None)
    p.add_argument("--background", dest="background_file", type=str, default=None, help="Background peak list")
    p.add_argument("--linkage", choices=["single", "average", "complete"], default=None)
    p.add_argument("--bin-width", dest="bin_width", type=float, default=None)
    p.add_argument("--n-jobs", dest="n_jobs", type=int, default=None)
    p.add_argument("--strict", action="store_true", default=None, help="Fail on the first unreadable file")
    p.add_argument("--force", action="store_true", help="Recompute even if a checkpoint exists")
    return p


def _add_merge_parser(sub):
    p = sub.add_parser("merge", help="Merge aligned runs into one compiled matrix")
    p.add_argument("runs", nargs="+", help="Run directories written by `align`")
    p.add_argument("--out", required=True, type=str, help="Output CSV for the compiled matrix")
    p.add_argument("--metadata", type=str, default=None, help="Metadata table (exact resolver) or directory (dirname resolver)")
    p.add_argument("--resolver", choices=["exact", "dirname"], default="exact")
    p.add_argument("--key", type=str, default="run_id", help="Join column for the exact resolver")
    p.add_argument("--normalization", choices=list(NORMALIZATION_METHODS), default=None,
                   help="Row normalisation of the compiled matrix (default: first run's config)")
    p.add_argument("--collision-tolerance", dest="collision_tolerance", type=float, default=DEFAULT_COLLISION_TOLERANCE,
                   help="Split a shared label into per-dataset columns when centroid masses differ by more than this (Da)")
    return p


def _add_normalize_parser(sub):
    p = sub.add_parser("normalize", help="Row-normalise an aligned matrix CSV")
    p.add_argument("matrix", type=str, help="Matrix CSV (first column = pixel id)")
    p.add_argument("--method", choices=list(NORMALIZATION_METHODS), default="tic")
    p.add_argument("--out", required=True, type=str)
    p.add_argument("--skip-cols", dest="skip_cols", type=int, default=0,
                   help="Leading non-intensity columns after the id (e.g. provenance)")
    return p


def _run_align(args) -> int:
    cfg = load_config(Path(args.config)) if args.config else AlignConfig()
    cfg = cfg.override(
        mass_range=tuple(args.mass_range) if args.mass_range else None,
        peak_alignment_method=args.peak_alignment_method,
        clust_h=args.clust_h,
        clust_int_method=args.clust_int_method,
        normalization_method=args.normalization_method,
        background_file=args.background_file,
        linkage=args.linkage,
        bin_width=args.bin_width,
        n_jobs=args.n_jobs,
        strict=args.strict,
    ).validate()

    run_dir, result = run_alignment(Path(args.root), Path(args.out_dir), cfg, name=args.name, force=args.force)
    manifest = read_manifest(run_dir)
    state = "reused" if result is None else "wrote"
    print(
        f"{state} {run_dir} with {manifest.get('n_pixels')} pixels x {manifest.get('n_features')} features "
        f"({manifest.get('n_failed_files')} of {manifest.get('n_files')} files failed)"
    )
    return 0


def _run_merge(args) -> int:
    resolver = None
    if args.metadata:
        if args.resolver == "exact":
            resolver = ExactIdResolver.from_file(Path(args.metadata), key=args.key)
        else:
            resolver = DirectoryNameResolver(Path(args.metadata))

    compiled = compile_runs([Path(r) for r in args.runs], resolver=resolver, collision_tolerance=args.collision_tolerance)
    if compiled.n_pixels == 0:
        print("No runs left to merge", file=sys.stderr)
        return 2

    method = args.normalization
    if method is None:
        first = read_manifest(Path(args.runs[0]))
        method = str((first.get("config") or {}).get("normalization_method") or "none")
    compiled.data = normalize_frame(compiled.data, method)

    out = Path(args.out)
    compiled.save(out)
    manifest = {
        "command": "merge",
        "runs": [str(r) for r in args.runs],
        "normalization_method": method,
        "n_pixels": compiled.n_pixels,
        "n_features": compiled.n_features,
        "datasets": compiled.datasets,
        "skipped": [{"dataset": d, "reason": r} for d, r in compiled.skipped],
    }
    manifest_path = out.with_name(out.stem + ".run_manifest.json")
    manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    print(
        f"wrote {out} with {compiled.n_pixels} pixels x {compiled.n_features} features "
        f"from {len(compiled.datasets)} datasets ({len(compiled.skipped)} skipped)"
    )
    return 0


def _run_normalize(args) -> int:
    df = pd.read_csv(args.matrix, index_col=0)
    df.index = df.index.astype(str)
    k = int(args.skip_cols)
    out = df.copy()
    out[out.columns[k:]] = normalize_rows(df.iloc[:, k:].to_numpy(dtype=float), args.method)
    out.to_csv(args.out)
    print(f"wrote {args.out} with {len(out)} rows ({args.method})")
    return 0


def main(argv=None):
    argv = argv if argv is not None else sys.argv[1:]
    ap = argparse.ArgumentParser(prog="msi-align", description="Peak alignment for DESI-MSI pixel spectra")
    ap.add_argument("--verbose", action="store_true")
    ap.add_argument("--quiet", action="store_true")
    sub = ap.add_subparsers(dest="cmd", required=True)
    _add_align_parser(sub)
    _add_merge_parser(sub)
    _add_normalize_parser(sub)
    args = ap.parse_args(argv)
    setup_logging(verbose=args.verbose, quiet=args.quiet)

    if args.cmd == "align":
        return _run_align(args)
    if args.cmd == "merge":
        return _run_merge(args)
    if args.cmd == "normalize":
        return _run_normalize(args)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
