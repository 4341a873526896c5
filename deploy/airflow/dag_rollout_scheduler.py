"""Airflow DAG template that drives canary rollout scheduling."""

from __future__ import annotations

from datetime import datetime

from airflow import DAG
from airflow.operators.bash import BashOperator


default_args = {
    "owner": "ml-platform",
    "depends_on_past": False,
    "retries": 1,
}


with DAG(
    dag_id="canary_rollout_scheduler",
    default_args=default_args,
    start_date=datetime(2026, 1, 1),
    schedule="*/15 * * * *",
    catchup=False,
    max_active_runs=1,
    tags=["governance", "canary", "rollout"],
) as dag:
    run_scheduler_cycle = BashOperator(
        task_id="run_scheduler_cycle",
        bash_command=(
            "cd /workspace && "
            "export PATH=$HOME/.local/bin:$PATH && "
            "python3 scripts/run_rollout_scheduler.py --once --config config/governance.yaml"
        ),
    )

    governance_status_snapshot = BashOperator(
        task_id="governance_status_snapshot",
        bash_command=(
            "cd /workspace && "
            "python3 scripts/run_governance_demo.py --config config/governance.yaml "
            "--requests 200 --out outputs/governance_status.json"
        ),
    )

    run_scheduler_cycle >> governance_status_snapshot
