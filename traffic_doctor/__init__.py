"""Traffic Doctor: organic traffic regression diagnosis.

Each stage module takes plain dicts and lists, returns plain dicts, and
has a CLI that reads CSV/JSON and writes JSON to stdout. The orchestrator
chains them into a run.
"""

from traffic_doctor.config import load_config
from traffic_doctor.orchestrator import run_diagnosis
from traffic_doctor.store import CsvMetricStore, MetricStore, RunStore

__all__ = ["CsvMetricStore", "MetricStore", "RunStore", "load_config", "run_diagnosis"]
