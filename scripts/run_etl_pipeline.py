#!/usr/bin/env python3
"""
Main entry point for the charts ETL pipeline
Runs one scheduled pass, or the daily scheduler with `scheduler`
"""

import json
import sys
from datetime import datetime

from charts_etl.pipelines.orchestrator import PipelineOrchestrator, setup_logging


def run_pipeline():
    """Run one scheduled pass with error handling"""
    print(f"=== Charts ETL Pipeline ===")
    print(f"Started at: {datetime.now()}")
    print("=" * 50)

    orchestrator = PipelineOrchestrator()
    try:
        results = orchestrator.run_scheduled()
        print(json.dumps(results, indent=2, default=str))

        print("=" * 50)
        print(f"Pipeline completed at: {datetime.now()}")

    except Exception as e:
        print(f"Pipeline failed with error: {str(e)}")
        print(f"Failed at: {datetime.now()}")
        sys.exit(1)
    finally:
        orchestrator.close()


def run_scheduler():
    """Run the pipeline on a continuous schedule"""
    print(f"=== Charts ETL Pipeline Scheduler ===")
    print(f"Started at: {datetime.now()}")
    print("Press Ctrl+C to stop the scheduler")
    print("=" * 50)

    orchestrator = PipelineOrchestrator()
    try:
        orchestrator.run_scheduler()
    finally:
        orchestrator.close()


if __name__ == "__main__":
    setup_logging()
    if len(sys.argv) > 1 and sys.argv[1] == "scheduler":
        run_scheduler()
    else:
        run_pipeline()
