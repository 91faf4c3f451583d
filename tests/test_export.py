import csv
import json

import pytest

from botmeter.export import DataExporter
from botmeter.models import AnalysisReport
from botmeter.utils import confidence_color, format_bytes, format_cost, format_percentage, truncate


@pytest.fixture
def report():
    cost = {
        'currency': 'USD', 'total_cost': 4.5, 'rate_per_gb': 0.15, 'free_allowance_bytes': 0, 'notes': [],
        'breakdown': [
            {'category': 'bot', 'bytes': 20_000_000_000, 'monthly_bytes': 20_000_000_000, 'monthly_cost': 3.0},
            {'category': 'human', 'bytes': 10_000_000_000, 'monthly_bytes': 10_000_000_000, 'monthly_cost': 1.5},
        ],
    }
    return AnalysisReport(
        report_id="abc123",
        site_id="shop",
        provider="vercel",
        window_start="2025-09-01T00:00:00Z",
        window_end="2025-10-01T00:00:00Z",
        window_days=30,
        metrics={
            'bytes': {'audience': {'bot': 20_000_000_000, 'human': 10_000_000_000},
                      'status': {'2xx': 29_000_000_000, '4xx': 1_000_000_000}},
            'cost': cost,
            'costs': {'audience': cost},
        },
        anomalies=[{'type': 'BURST_SPIKE', 'ip': '1.2.3.4', 'ratio': 9.1, 'sample_minute': 1756728000000,
                    'samples': [{'minute': 1756728000000, 'requests': 300}]}],
    )


class TestDataExporter:

    def test_report_json(self, report, tmp_path):
        path = DataExporter(str(tmp_path)).export_report_json(report, "report.json")

        with open(path) as f:
            data = json.load(f)
        assert data['report_id'] == "abc123"
        assert data['window']['days'] == 30

    def test_default_filename(self, report, tmp_path):
        path = DataExporter(str(tmp_path)).export_report_json(report)
        assert path.split('/')[-1].startswith("report_shop_")

    def test_costs_csv(self, report, tmp_path):
        path = DataExporter(str(tmp_path)).export_costs_csv(report, "costs.csv")

        with open(path, newline='') as f:
            rows = list(csv.DictReader(f))
        assert [r['category'] for r in rows] == ['bot', 'human']
        assert rows[0]['dimension'] == 'audience'
        assert rows[0]['monthly_cost'] == '3.0'

    def test_anomalies_csv(self, report, tmp_path):
        path = DataExporter(str(tmp_path)).export_anomalies_csv(report, "anomalies.csv")

        with open(path, newline='') as f:
            rows = list(csv.DictReader(f))
        assert rows[0]['peak_minute'] == '2025-09-01 12:00:00'
        assert json.loads(rows[0]['evidence']) == {'ratio': 9.1, 'sample_minute': 1756728000000}

    def test_charts(self, report, tmp_path):
        path = DataExporter(str(tmp_path)).create_charts(report, "charts.html")

        with open(path, encoding='utf-8') as f:
            html = f.read()
        assert "Bot vs Human Bytes" in html
        assert "BURST_SPIKE" in html


class TestFormatting:

    def test_format_bytes(self):
        assert format_bytes(512) == "512 B"
        assert format_bytes(2048) == "2.0 KB"
        assert format_bytes(3 * 1024 ** 3) == "3.00 GB"

    def test_format_cost(self):
        assert format_cost(1234.5) == "$1,234.50"
        assert format_cost(2, 'EUR') == "EUR 2.00"

    def test_format_percentage(self):
        assert format_percentage(1, 4) == "25.0%"
        assert format_percentage(1, 0) == "0.0%"

    def test_confidence_color(self):
        assert confidence_color(0.9) == "green"
        assert confidence_color(0.7) == "yellow"
        assert confidence_color(0.4) == "red"

    def test_truncate(self):
        assert truncate("short") == "short"
        assert truncate("x" * 100, 10) == "xxxxxxx..."
