"""
Audit report rendering: JSON, CSV and HTML.
"""

import csv
import html
import io
import json
from typing import Callable, Dict

from ..errors import ConfigurationError
from .models import SecurityAudit

CSV_HEADER = ["ID", "Timestamp", "Type", "Severity", "Category", "SandboxID",
              "Description", "Action"]

_SEVERITY_STYLE = """
    .severity-critical { color: #c62828; font-weight: bold; }
    .severity-high { color: #ef6c00; font-weight: bold; }
    .severity-medium { color: #f9a825; font-weight: bold; }
    .severity-low { color: #2e7d32; }
"""


def render_json(audit: SecurityAudit) -> str:
    return json.dumps(audit.to_dict(), indent=2)


def render_csv(audit: SecurityAudit) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')
    writer.writerow(CSV_HEADER)
    for event in audit.events:
        writer.writerow([
            event.id,
            event.timestamp.isoformat(),
            event.type.value,
            event.severity.value,
            event.category.value,
            event.sandbox_id,
            event.description,
            event.action.value,
        ])
    return buffer.getvalue()


def render_html(audit: SecurityAudit) -> str:
    rows = []
    for event in audit.events:
        severity = html.escape(event.severity.value)
        rows.append(
            "      <tr>"
            f"<td>{html.escape(event.timestamp.isoformat())}</td>"
            f"<td><span class=\"severity-{severity}\">{severity}</span></td>"
            f"<td>{html.escape(event.category.value)}</td>"
            f"<td>{html.escape(event.sandbox_id)}</td>"
            f"<td>{html.escape(event.description)}</td>"
            f"<td>{html.escape(event.action.value)}</td>"
            "</tr>"
        )

    summary = audit.summary
    return "\n".join([
        "<!DOCTYPE html>",
        "<html>",
        "<head>",
        "  <meta charset=\"utf-8\">",
        "  <title>Security Audit Report</title>",
        "  <style>",
        "    body { font-family: Arial, sans-serif; margin: 20px; }",
        "    table { width: 100%; border-collapse: collapse; }",
        "    th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }",
        "    th { background-color: #f2f2f2; }",
        _SEVERITY_STYLE.strip("\n"),
        "  </style>",
        "</head>",
        "<body>",
        "  <h1>Security Audit Report</h1>",
        f"  <p>Report {html.escape(audit.id)} generated {html.escape(audit.timestamp.isoformat())}</p>",
        "  <h2>Summary</h2>",
        "  <ul>",
        f"    <li>Total Events: {summary.get('total_events', 0)}</li>",
        f"    <li>Violations: {summary.get('violations', 0)}</li>",
        f"    <li>Warnings: {summary.get('warnings', 0)}</li>",
        f"    <li>Critical: {summary.get('critical', 0)}</li>",
        "  </ul>",
        "  <h2>Events</h2>",
        "  <table>",
        "    <thead>",
        "      <tr><th>Timestamp</th><th>Severity</th><th>Category</th>"
        "<th>Sandbox ID</th><th>Description</th><th>Action</th></tr>",
        "    </thead>",
        "    <tbody>",
        *rows,
        "    </tbody>",
        "  </table>",
        "</body>",
        "</html>",
        "",
    ])


RENDERERS: Dict[str, Callable[[SecurityAudit], str]] = {
    'json': render_json,
    'csv': render_csv,
    'html': render_html,
}


def render_audit(audit: SecurityAudit, fmt: str = 'json') -> str:
    """
    Render an audit in the requested format.

    Raises:
        ConfigurationError: unsupported format
    """
    renderer = RENDERERS.get((fmt or '').lower())
    if renderer is None:
        raise ConfigurationError(f"Unsupported export format: {fmt}")
    return renderer(audit)
