from datetime import datetime, timezone
from pathlib import Path
import sys

import pytest

project_root = Path(__file__).resolve().parents[1]
src_path = project_root / "src"

if src_path.exists():
    sys.path.insert(0, str(src_path))


@pytest.fixture
def utc():
    """Builds tz-aware UTC datetimes: ``utc(2024, 1, 3, 12)``."""
    def _make(*args):
        return datetime(*args, tzinfo=timezone.utc)
    return _make


@pytest.fixture
def fixture_payload():
    """A flat 200 mg/dL input with full-day schedules, in fixture wire format."""
    glucose = [
        {"date": f"2024-01-03T{10 + minute // 60:02d}:{minute % 60:02d}:00Z", "value": 200.0}
        for minute in range(0, 125, 5)
    ]
    day = {"startDate": "2024-01-03T00:00:00Z", "endDate": "2024-01-04T00:00:00Z"}
    return {
        "predictionStart": "2024-01-03T12:00:00Z",
        "glucoseHistory": glucose,
        "doses": [],
        "carbEntries": [],
        "basal": [dict(day, value=1.0)],
        "sensitivity": [dict(day, value=50.0)],
        "carbRatio": [dict(day, value=10.0)],
        "target": [dict(day, lowerBound=100.0, upperBound=110.0)],
        "suspendThreshold": 70.0,
        "maxBolus": 5.0,
        "maxBasalRate": 3.0,
    }
