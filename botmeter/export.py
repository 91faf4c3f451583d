"""Export functionality for analysis reports."""

import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import plotly.graph_objects as go
from plotly.subplots import make_subplots

from .config import EXPORT_SETTINGS
from .models import AnalysisReport


class DataExporter:
    """Handles exporting analysis reports to JSON, CSV and HTML charts."""

    def __init__(self, output_dir: Optional[str] = None):
        self.output_dir = Path(output_dir or EXPORT_SETTINGS['output_dir'])
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, filename: Optional[str], prefix: str, report: AnalysisReport, suffix: str) -> Path:
        if not filename:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            filename = f"{prefix}_{report.site_id}_{timestamp}.{suffix}"
        return self.output_dir / filename

    def export_report_json(self, report: AnalysisReport, filename: Optional[str] = None) -> str:
        """Export the full report as JSON."""
        filepath = self._path(filename, 'report', report, 'json')
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(report.to_dict(), f, indent=2, default=str)
        return str(filepath)

    def export_costs_csv(self, report: AnalysisReport, filename: Optional[str] = None) -> str:
        """Export per-category bytes and monthly cost for every breakdown dimension."""
        filepath = self._path(filename, 'costs', report, 'csv')
        costs = (report.metrics or {}).get('costs') or {}

        with open(filepath, 'w', newline='', encoding='utf-8') as csvfile:
            writer = csv.writer(csvfile, delimiter=EXPORT_SETTINGS['csv_delimiter'])
            writer.writerow(['dimension', 'category', 'bytes', 'monthly_bytes', 'monthly_cost', 'currency'])
            for dimension, cost in costs.items():
                for item in cost.get('breakdown', []):
                    writer.writerow([
                        dimension,
                        item['category'],
                        item['bytes'],
                        item['monthly_bytes'],
                        item['monthly_cost'],
                        cost.get('currency'),
                    ])
        return str(filepath)

    def export_anomalies_csv(self, report: AnalysisReport, filename: Optional[str] = None) -> str:
        """Export anomaly records, one row each."""
        filepath = self._path(filename, 'anomalies', report, 'csv')

        with open(filepath, 'w', newline='', encoding='utf-8') as csvfile:
            writer = csv.writer(csvfile, delimiter=EXPORT_SETTINGS['csv_delimiter'])
            writer.writerow(['type', 'ip', 'peak_minute', 'evidence'])
            for anomaly in report.anomalies:
                minute = anomaly.get('sample_minute')
                minute_str = ''
                if minute is not None:
                    minute_str = datetime.fromtimestamp(minute / 1000, tz=timezone.utc).strftime(
                        EXPORT_SETTINGS['timestamp_format'])
                evidence = {k: v for k, v in anomaly.items() if k not in ('type', 'ip', 'samples')}
                writer.writerow([anomaly['type'], anomaly['ip'], minute_str, json.dumps(evidence)])
        return str(filepath)

    def create_charts(self, report: AnalysisReport, filename: Optional[str] = None) -> str:
        """Create interactive charts and save as HTML."""
        filepath = self._path(filename, 'charts', report, 'html')
        metrics = report.metrics or {}
        byte_breakdown = metrics.get('bytes') or {}

        fig = make_subplots(
            rows=2, cols=2,
            subplot_titles=[
                'Bot vs Human Bytes', 'Monthly Cost by Category',
                'Anomalies by Type', 'Bytes by Status Class',
            ],
            specs=[
                [{"type": "pie"}, {"type": "bar"}],
                [{"type": "bar"}, {"type": "bar"}],
            ]
        )

        audience = byte_breakdown.get('audience')
        if audience:
            fig.add_trace(
                go.Pie(labels=list(audience.keys()), values=list(audience.values()), name="Audience"),
                row=1, col=1
            )

        cost = metrics.get('cost') or {}
        items = cost.get('breakdown') or []
        if items:
            fig.add_trace(
                go.Bar(x=[i['category'] for i in items], y=[i['monthly_cost'] for i in items],
                       name=f"Cost ({cost.get('currency', 'USD')})"),
                row=1, col=2
            )

        anomaly_types = {}
        for anomaly in report.anomalies:
            anomaly_types[anomaly['type']] = anomaly_types.get(anomaly['type'], 0) + 1
        if anomaly_types:
            fig.add_trace(
                go.Bar(x=list(anomaly_types.keys()), y=list(anomaly_types.values()), name="Anomalies"),
                row=2, col=1
            )

        status = byte_breakdown.get('status') or {}
        if status:
            fig.add_trace(
                go.Bar(x=list(status.keys()), y=list(status.values()), name="Status bytes"),
                row=2, col=2
            )

        fig.update_layout(
            height=EXPORT_SETTINGS['chart_height'],
            showlegend=False,
            title_text=f"Bot Traffic Cost: {report.site_id} ({report.window_start} .. {report.window_end})",
            title_x=0.5
        )

        fig.write_html(str(filepath))
        return str(filepath)
