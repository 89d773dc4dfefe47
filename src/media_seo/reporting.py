"""Cost reports and job exports."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Union

import pandas as pd

from .models import JobStatus, ProcessingJob

logger = logging.getLogger(__name__)

COST_COLUMNS = ["input_tokens", "output_tokens", "input_cost", "output_cost", "total_cost"]

EXPORT_COLUMNS = [
    "job_id",
    "subject_id",
    "language_code",
    "status",
    "provider",
    "model",
    "prompt_version",
    "input_tokens",
    "output_tokens",
    "estimated_input",
    "total_cost",
    "score",
    "retry_count",
    "error_message",
    "batch_id",
    "created_at",
    "processed_at",
    "approved_at",
]


def jobs_frame(jobs: Iterable[ProcessingJob]) -> pd.DataFrame:
    rows = [job.to_dict() for job in jobs]
    if not rows:
        return pd.DataFrame(columns=EXPORT_COLUMNS)
    return pd.DataFrame(rows)


def cost_breakdown(jobs: Iterable[ProcessingJob]) -> pd.DataFrame:
    """Per-model job count, token totals and cost totals for billed jobs."""
    df = jobs_frame(jobs)
    df = df[df["model"].notna() & (df["total_cost"] > 0)] if len(df) else df
    if df.empty:
        return pd.DataFrame(columns=["model", "provider", "job_count"] + COST_COLUMNS)

    grouped = df.groupby(["model", "provider"], dropna=False)
    summary = grouped[COST_COLUMNS].sum()
    summary.insert(0, "job_count", grouped.size())
    summary = summary.reset_index().sort_values("total_cost", ascending=False)
    summary[["input_cost", "output_cost", "total_cost"]] = summary[
        ["input_cost", "output_cost", "total_cost"]
    ].round(8)
    return summary.reset_index(drop=True)


def cost_stats(jobs: Iterable[ProcessingJob]) -> Dict[str, Any]:
    df = jobs_frame(jobs)
    if df.empty:
        return {"total_jobs": 0, "billed_jobs": 0, "total_cost": 0.0, "average_cost": 0.0, "estimated_jobs": 0}

    billed = df[df["total_cost"] > 0]
    return {
        "total_jobs": int(len(df)),
        "billed_jobs": int(len(billed)),
        "total_cost": round(float(billed["total_cost"].sum()), 8),
        "average_cost": round(float(billed["total_cost"].mean()), 8) if len(billed) else 0.0,
        "total_input_tokens": int(billed["input_tokens"].sum()),
        "total_output_tokens": int(billed["output_tokens"].sum()),
        "estimated_jobs": int(billed["estimated_input"].sum()),
        "approved": int((df["status"] == JobStatus.APPROVED.value).sum()),
        "needs_review": int((df["status"] == JobStatus.NEEDS_REVIEW.value).sum()),
        "failed": int((df["status"] == JobStatus.FAILED.value).sum()),
    }


def status_counts(jobs: Iterable[ProcessingJob]) -> Dict[str, int]:
    counts = {status.value: 0 for status in JobStatus}
    for job in jobs:
        counts[job.status.value] += 1
    return counts


def _serialize(value: Any) -> Any:
    if value is None or (not isinstance(value, (list, dict, str)) and pd.isna(value)):
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "item"):
        # numpy scalars
        return value.item()
    return value


def export_jobs(jobs: Iterable[ProcessingJob], output_path: Union[str, Path], fmt: str = "csv") -> int:
    """Write job records to csv or jsonl. Returns the number of rows written."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df = jobs_frame(jobs)
    df = df[[c for c in EXPORT_COLUMNS if c in df.columns]]

    if fmt == "csv":
        df.to_csv(output_path, index=False)
    elif fmt == "jsonl":
        with open(output_path, "w", encoding="utf-8") as f:
            for row in df.to_dict("records"):
                f.write(json.dumps({k: _serialize(v) for k, v in row.items()}, ensure_ascii=False) + "\n")
    else:
        raise ValueError(f"Unsupported export format: {fmt}")

    logger.info(f"Exported {len(df)} jobs to {output_path}")
    return len(df)
