# scripts/main.py
import argparse, os, sys, json, yaml, logging, platform, subprocess
from pathlib import Path
from datetime import datetime, timezone
import arviz as az
import multiprocessing as mp
import pandas as pd

# Importing prevalence package - self built
from prevalence.data.load_data import read_raw
from prevalence.data.make_synthetic_data import make_synthetic_dataset
from prevalence.data.imputation import impute_knn, ks_imputation_check
from prevalence.data.standardize import prepare_datasets
from prevalence.errors import SamplerFatalError
from prevalence.model.model import build_prevalence_model, coefficient_groups
from prevalence.model.sampler import run_sampler
from prevalence.evaluation.posterior_summary import summarize_posterior
from prevalence.evaluation.oos_prediction import evaluate_split, metrics_record
from prevalence.evaluation.plots import (
    plot_correlation_heatmap,
    plot_covariate_densities,
    plot_predictions,
    plot_trace,
)

# ---- Project root anchored ----
PROJECT_ROOT = Path(__file__).resolve().parents[1]

def setup_logging(run_dir: Path):
    run_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        handlers=[logging.FileHandler(run_dir / "run.log"), logging.StreamHandler(sys.stdout)],
        force=True,
    )

def save_env(run_dir: Path):
    meta = {
        "python": sys.version,
        "platform": platform.platform(),
        "time_utc": datetime.now(timezone.utc).isoformat(),
    }
    try:
        meta["git_commit"] = subprocess.check_output(["git", "rev-parse", "HEAD"]).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        meta["git_commit"] = None
    (run_dir / "env.json").write_text(json.dumps(meta, indent=2))

def get_run_dir(output_root: Path, cfg_path: str, run_override: str | None) -> Path:
    # Prefer explicit --run, then RUN_ID env, then timestamped default
    run_id = run_override or os.environ.get("RUN_ID") or \
             f"{Path(cfg_path).stem}_{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}"
    os.environ["RUN_ID"] = run_id
    run_dir = output_root / run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir

def save_dataset(df: pd.DataFrame, run_dir: Path, name: str):
    data_dir = run_dir / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    fp = data_dir / f"{name}.csv"
    df.to_csv(fp, index=False)
    manifest = {
        "file": fp.name,
        "rows": int(df.shape[0]),
        "cols": int(df.shape[1]),
        "columns": df.columns.tolist(),
    }
    (data_dir / f"{name}_manifest.json").write_text(json.dumps(manifest, indent=2))
    logging.info(f"Saved dataset -> {fp}")

def load_tables(data_cfg: dict, seed: int):
    """Raw train/test tables from CSV, or a synthetic pair when no train_path is configured."""
    train_path = data_cfg.get("train_path")
    if train_path:
        train = read_raw(PROJECT_ROOT / train_path)
        test_path = data_cfg.get("test_path")
        test = read_raw(PROJECT_ROOT / test_path) if test_path else None
        return train, test

    syn = data_cfg.get("synthetic") or {}
    train, test, truth = make_synthetic_dataset(
        n_obs=int(syn.get("n_train", 120)),
        n_test=int(syn.get("n_test", 30)),
        tau=float(syn.get("tau", 0.0)),
        seed=seed,
    )
    logging.info(f"Synthetic data: gamma={truth['gamma']} tau={truth['tau']} beta={truth['beta'].round(2).tolist()}")
    return train, (test if len(test) else None)


# Defining Main to run workflow
def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default="configs/baseline.yaml")
    ap.add_argument("--run", default=None, help="Optional run name (overrides timestamp)")
    args = ap.parse_args()

    # Resolve config path relative to project root (robust to CWD)
    cfg_path = (PROJECT_ROOT / args.config).resolve()
    with open(cfg_path, "r") as f:
        cfg = yaml.safe_load(f)

    seed        = cfg.get("seed", 123)
    data_cfg    = cfg.get("data") or {}
    model_cfg   = cfg.get("model_cfg") or {}
    sampler_cfg = cfg.get("sampler") or {}
    diag_cfg    = cfg.get("diagnostics") or {}
    pred_cfg    = cfg.get("prediction") or {}
    evaluation  = cfg.get("evaluation") or {}

    # Always write under <project-root>/<output_dir>
    output_root = (PROJECT_ROOT / cfg.get("output_dir", "output")).resolve()
    run_dir = get_run_dir(output_root, cfg_path=str(cfg_path), run_override=args.run)

    setup_logging(run_dir)
    logging.info(f"PROJECT_ROOT={PROJECT_ROOT}")
    logging.info(f"Config path = {cfg_path}")
    logging.info(f"Output root = {output_root}")
    logging.info(f"PID={os.getpid()} | RUN_ID={os.environ['RUN_ID']} | run_dir={run_dir}")

    save_env(run_dir)
    (run_dir / "config_used.yaml").write_text(yaml.safe_dump(cfg))

    # ----------- Modelling Process Started --------------

    # ---- Loading Data ----
    train_raw, test_raw = load_tables(data_cfg, seed)
    plots_on = bool(evaluation.get("plots", True))
    plot_dir = run_dir / "eval" / "plots"

    # ---- Missing covariates: KNN imputation + KS check ----
    impute_cfg = data_cfg.get("impute") or {}
    if impute_cfg.get("enabled", True):
        train_imp, test_imp = impute_knn(train_raw, test_raw, n_neighbors=int(impute_cfg.get("n_neighbors", 5)))
        ks = ks_imputation_check(train_raw, train_imp)
        if len(ks):
            ks.to_csv(run_dir / "imputation_ks.csv", index=False)
            logging.info(f"Imputation KS check:\n{ks.to_string(index=False)}")
            if plots_on:
                plot_covariate_densities(train_raw, plot_dir / "covariate_densities.png", imputed=train_imp)
        train_raw, test_raw = train_imp, test_imp

    # ---- Validation & standardization (train mean/sd only) ----
    train, test, scale = prepare_datasets(train_raw, test_raw)
    scale.to_frame().to_csv(run_dir / "scale_params.csv")
    save_dataset(train, run_dir, name="train_standardized")
    if test is not None:
        save_dataset(test, run_dir, name="test_standardized")
    if plots_on:
        plot_correlation_heatmap(train, plot_dir / "correlation_heatmap.png")

    # ---- Building Model ----
    model = build_prevalence_model(train, model_cfg)
    coefficient_groups().to_csv(run_dir / "coefficient_groups.csv", index=False)

    # ----- MCMC NUTS Sampler -----
    try:
        fit = run_sampler(model, sampler_cfg, thresholds=diag_cfg)
    except SamplerFatalError as e:
        (run_dir / "fit_status.json").write_text(json.dumps({"status": "failed", "reasons": [str(e)]}, indent=2))
        logging.error(f"Sampling failed: {e}")
        raise
    (run_dir / "fit_status.json").write_text(json.dumps(fit.status_record(), indent=2))
    logging.info(f"{fit}")

    out_path = run_dir / "posterior.nc" # Outputting nc idata object
    az.to_netcdf(fit.idata, out_path)
    logging.info(f"Saved InferenceData -> {out_path}")

    # ---- Parameter summary ----
    hdi_prob = float(evaluation.get("hdi_prob", 0.95))
    # lambda has one entry per country; it is left out of the headline table
    summary_vars = [v for v in ("gamma", "alpha", "delta", "beta", "tau") if v in fit.idata.posterior]
    summary = summarize_posterior(fit, hdi_prob=hdi_prob, var_names=summary_vars)
    summary.to_csv(run_dir / "parameter_summary.csv")
    logging.info(f"Parameter summary:\n{summary.to_string()}")

    # ---- Sampling Diagnostics ----
    diag = {k: v for k, v in fit.diagnostics.items() if k != "summary"}
    (run_dir / "diagnostics.json").write_text(json.dumps(diag, indent=2, default=str))
    if plots_on:
        plot_trace(fit.idata, plot_dir / "trace.png", var_names=evaluation.get("trace_vars") or ["gamma", "tau"])

    # ---- Posterior predictive (train) & OOS prediction (test) ----
    interval = tuple(pred_cfg.get("interval", (0.025, 0.975)))
    pred_seed = int(pred_cfg.get("seed", 2025))
    zero_policy = evaluation.get("mape_zero_policy", "raise")

    metrics = {}
    splits = [("train", train, pred_cfg.get("train_random_effect", "posterior"))]
    if test is not None:
        splits.append(("test", test, pred_cfg.get("test_random_effect", "zero")))
    for name, table, mode in splits:
        preds, results = evaluate_split(
            model, fit, table, random_effect=mode, seed=pred_seed, interval=interval, mape_zero_policy=zero_policy,
        )
        preds.to_csv(run_dir / f"predictions_{name}.csv", index=False)
        metrics[name] = {"random_effect": mode, **results}
        logging.info(f"{name} metrics ({mode}): {results['metrics']}")
        if plots_on and "observed" in preds.columns and len(preds):
            plot_predictions(preds, plot_dir / f"predictions_{name}.png", title=f"{name}: observed vs predicted")

    # undefined metrics (NaN) are written as null
    (run_dir / "metrics.json").write_text(json.dumps(metrics_record(metrics), indent=2))
    logging.info(f"Metrics -> {run_dir / 'metrics.json'}")


if __name__ == "__main__":
    try:
        mp.set_start_method("spawn", force=True)
    except RuntimeError:
        pass
    os.environ.setdefault("OMP_NUM_THREADS", "1")
    os.environ.setdefault("MKL_NUM_THREADS", "1")
    main()
