from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Dict, Optional

from jinja2 import Template

from .detection import DetectionResult
from .utils import format_float

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>ctdnascope report: {{ sample }}</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 6px 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    .POSITIVE { color: #b00020; font-weight: bold; }
    .NEGATIVE { color: #1b5e20; font-weight: bold; }
    .UNDETERMINED { color: #8d6e00; font-weight: bold; }
  </style>
</head>
<body>

<h1>ctDNA detection: <span class="{{ result.status }}">{{ result.status }}</span></h1>
<p class="small">Generated: {{ generated_at }}</p>

<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      <tr><th>Sample</th><td><code>{{ sample }}</code></td></tr>
      {% for k, v in inputs.items() %}
      <tr><th>{{ k }}</th><td><code>{{ v }}</code></td></tr>
      {% endfor %}
    </table>
  </div>
  <div class="card">
    <h3>Test</h3>
    <table>
      <tr><th>p-value</th><td>{{ fmt(result.p_value) }}</td></tr>
      <tr><th>Alt read pairs</th><td>{{ result.alt_count }}</td></tr>
      <tr><th>Informative read pairs</th><td>{{ result.informative_reads }}</td></tr>
      <tr><th>Background rate</th><td>{{ fmt(result.background_rate) }}</td></tr>
      <tr><th>Effective rate</th><td>{{ fmt(result.test.background_rate) }}</td></tr>
      <tr><th>Iterations</th><td>{{ result.test.n_iterations }}</td></tr>
      <tr><th>Seed</th><td>{{ result.test.seed }}</td></tr>
      <tr><th>Alpha</th><td>{{ result.test.alpha }}</td></tr>
      <tr><th>Informative reads threshold</th><td>{{ result.test.informative_reads_threshold }}</td></tr>
    </table>
  </div>
</div>

<h2>Background</h2>
<table>
  <tr><th>Positions used</th><td>{{ result.background.n_positions }}</td></tr>
  <tr><th>Positions excluded</th><td>{{ result.background.n_excluded_positions }}</td></tr>
  <tr><th>Total depth</th><td>{{ result.background.total_depth }}</td></tr>
  <tr><th>Total non-reference</th><td>{{ result.background.total_alt }}</td></tr>
  <tr><th>Substitution specific</th><td>{{ result.substitution_specific }}</td></tr>
</table>

<h2>Test units</h2>
<table>
  <tr>
    <th>Unit</th><th>Mutations</th><th>Ref</th><th>Alt</th><th>Informative</th>
    <th>Background rate</th><th>Purification p</th>
  </tr>
  {% for u in result.units %}
  <tr>
    <td><code>{{ u.label }}</code></td>
    <td>{{ u.n_mutations }}</td>
    <td>{{ u.ref_reads }}</td>
    <td>{{ u.alt_reads }}</td>
    <td>{{ u.informative_reads }}</td>
    <td>{{ fmt(u.background_rate) }}</td>
    <td>{{ fmt(u.purification_probability, 3) }}</td>
  </tr>
  {% endfor %}
</table>

<h2>Interpretation notes</h2>
<ul>
  <li>The p-value is empirical: (1 + simulations reaching the observed alt count) / (1 + iterations).</li>
  <li>UNDETERMINED means fewer informative read pairs than the threshold, whatever the p-value.</li>
  <li>Phase groups are tested as one unit against a reduced background rate.</li>
</ul>

<hr>
<p class="small">ctdnascope {{ version }}</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    result: DetectionResult,
    sample: str,
    inputs: Optional[Dict[str, str]] = None,
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        result=result,
        sample=sample,
        inputs=inputs or {},
        fmt=format_float,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    logger.debug("Report rendered to %s", out_path)
    return out_path
