#!/usr/bin/env python3
import argparse
from pathlib import Path
import json
from prevalence.model.sampler import load_fit
from prevalence.evaluation.posterior_summary import summarize_posterior

def main():
    ap = argparse.ArgumentParser(description="Quick sampling diagnostics tester")
    ap.add_argument("--nc", required=True, help="Path to posterior.nc")
    ap.add_argument("--out", default=None, help="Output dir (default: <nc_dir>/eval/diag)")
    ap.add_argument("--vars", default=None, help="Comma-separated var names (optional)")
    ap.add_argument("--hdi", type=float, default=0.95, help="HDI probability for the summary table")
    ap.add_argument("--rhat-max", type=float, default=None, help="Override the R-hat threshold")
    ap.add_argument("--ess-min", type=float, default=None, help="Override the bulk ESS threshold")
    args = ap.parse_args()

    thresholds = {}
    if args.rhat_max is not None:
        thresholds["rhat_max"] = args.rhat_max
    if args.ess_min is not None:
        thresholds["ess_min"] = args.ess_min

    # Loading in idata object and re-deriving the fit status
    fit = load_fit(args.nc, thresholds=thresholds)

    # Choosing folder to save outputs
    out_dir = Path(args.out) if args.out else (Path(args.nc).parent / "eval" / "diag")
    out_dir.mkdir(parents=True, exist_ok=True)

    var_names = None
    if args.vars:
        var_names = []
        for tok in args.vars.split():
            var_names.extend([t.strip() for t in tok.split(",") if t.strip()])

    summary = summarize_posterior(fit.idata, hdi_prob=args.hdi, var_names=var_names)
    summary.to_csv(out_dir / "parameter_summary.csv")

    record = fit.status_record()
    record["bfmi_min"] = fit.diagnostics.get("bfmi_min")
    record["tree_depth"] = fit.diagnostics.get("tree_depth")
    (out_dir / "diagnostics.json").write_text(json.dumps(record, indent=2))

    print(json.dumps(record, indent=2))
    print(summary.to_string())

if __name__ == "__main__":
    main()
