"""
Self-contained HTML report builder.

Produces a single HTML file with numbered, collapsible analysis sections,
embedded Plotly charts and a provenance block.

Usage:
    from dengue_gex.html_report import AnalysisReport

    report = AnalysisReport(
        title="Whole-blood expression in dengue infection",
        dataset="GDS5093",
    )
    report.add_section("Sample clustering", paragraphs=[...], figures=[...])
    report.set_summary("DHF vs control: 412 genes up, 388 down.")
    report.save("reports/dengue/report.html")
"""

import html
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

PLOTLY_CDN = "https://cdn.plot.ly/plotly-2.27.0.min.js"


class AnalysisReport:
    """Builder for the exploratory-analysis HTML document."""

    def __init__(
        self,
        title: str,
        dataset: str,
        badges: Optional[List[str]] = None,
    ):
        self.title = title
        self.dataset = dataset
        self.badges = badges or [dataset]
        self.sections: List[Dict[str, Any]] = []
        self.summary: Optional[str] = None
        self.provenance: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dataset": dataset,
        }

    def add_section(
        self,
        title: str,
        paragraphs: Sequence[str] = (),
        figures: Sequence[str] = (),
        tables: Sequence[str] = (),
    ) -> "AnalysisReport":
        """
        Add a numbered section.

        Args:
            title: Section heading
            paragraphs: Narrative text (escaped)
            figures: HTML fragments from ``ReportPlotter.to_html``
            tables: HTML tables from ``results_table`` / ``frame_table``
        """
        self.sections.append({
            "number": len(self.sections) + 1,
            "title": title,
            "paragraphs": list(paragraphs),
            "figures": list(figures),
            "tables": list(tables),
        })
        return self

    def set_summary(self, summary: str) -> "AnalysisReport":
        """Set the closing summary; blank lines separate paragraphs."""
        self.summary = summary
        return self

    def add_provenance(self, key: str, value: Any) -> "AnalysisReport":
        """Add provenance metadata (accession, methods, thresholds, etc.)."""
        self.provenance[key] = value
        return self

    def save(self, filepath) -> str:
        """Render and save the HTML report. Returns the absolute path."""
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(), encoding="utf-8")
        return str(path.resolve())

    def render(self) -> str:
        """Render the full HTML report."""
        sections_html = "\n".join(self._render_section(s) for s in self.sections)
        summary_html = self._render_summary()
        provenance_html = self._render_provenance()
        badges = " ".join(
            f'<span class="badge">{html.escape(str(b))}</span>' for b in self.badges
        )

        return f'''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{html.escape(self.title)}</title>
    <script src="{PLOTLY_CDN}"></script>
    <style>
        * {{ box-sizing: border-box; margin: 0; padding: 0; }}
        body {{
            font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
            background: #f8f9fa;
            color: #2c3e50;
            line-height: 1.6;
            padding: 0 20px 40px;
            max-width: 1200px;
            margin: 0 auto;
        }}
        header {{
            text-align: center;
            padding: 40px 0 20px;
            border-bottom: 2px solid #e9ecef;
            margin-bottom: 30px;
        }}
        header h1 {{
            font-size: 1.6em;
            font-weight: 500;
            margin-bottom: 12px;
        }}
        .badge {{
            display: inline-block;
            background: #c0392b;
            color: white;
            padding: 3px 10px;
            border-radius: 12px;
            font-size: 0.8em;
            margin: 2px;
        }}
        .section {{
            background: white;
            border-radius: 8px;
            padding: 20px 24px;
            margin-bottom: 16px;
            box-shadow: 0 1px 3px rgba(0,0,0,0.08);
        }}
        .section-header {{
            display: flex;
            align-items: center;
            cursor: pointer;
            user-select: none;
        }}
        .section-number {{
            background: #c0392b;
            color: white;
            width: 28px;
            height: 28px;
            border-radius: 50%;
            display: flex;
            align-items: center;
            justify-content: center;
            font-size: 0.85em;
            font-weight: 600;
            margin-right: 12px;
            flex-shrink: 0;
        }}
        .section-title {{ font-weight: 600; font-size: 1.05em; }}
        .section-toggle {{
            margin-left: auto;
            color: #aaa;
            font-size: 1.2em;
            transition: transform 0.2s;
        }}
        .section-toggle.collapsed {{ transform: rotate(-90deg); }}
        .section-body {{ margin-top: 14px; overflow: hidden; }}
        .section-body.collapsed {{ display: none; }}
        .section-body p {{ margin-bottom: 10px; }}
        .figure {{ margin: 14px 0; }}
        table {{
            border-collapse: collapse;
            width: 100%;
            margin: 10px 0;
        }}
        th, td {{
            padding: 6px 12px;
            border: 1px solid #e9ecef;
            text-align: left;
            font-size: 0.9em;
        }}
        th {{ background: #f8f9fa; font-weight: 600; }}
        .summary-section {{
            background: #fbeeee;
            border-left: 4px solid #c0392b;
            border-radius: 0 8px 8px 0;
            padding: 20px 24px;
            margin: 24px 0;
        }}
        .summary-section h2 {{ color: #c0392b; font-size: 1.1em; margin-bottom: 8px; }}
        .provenance {{
            background: white;
            border-radius: 8px;
            padding: 16px 24px;
            margin-top: 24px;
            font-size: 0.85em;
            color: #666;
            box-shadow: 0 1px 3px rgba(0,0,0,0.08);
        }}
        .provenance h3 {{ font-size: 0.95em; color: #888; margin-bottom: 8px; cursor: pointer; }}
        .provenance-body {{ display: none; }}
        .provenance-body.expanded {{ display: block; }}
        .provenance dt {{ font-weight: 600; margin-top: 6px; }}
        .provenance dd {{ margin-left: 16px; word-break: break-all; }}
        .no-data {{ color: #999; font-style: italic; }}
    </style>
</head>
<body>
    <header>
        <h1>{html.escape(self.title)}</h1>
        <div>{badges}</div>
    </header>

    {sections_html}
    {summary_html}
    {provenance_html}

    <script>
        document.querySelectorAll('.section-header').forEach(function(header) {{
            header.addEventListener('click', function() {{
                this.nextElementSibling.classList.toggle('collapsed');
                this.querySelector('.section-toggle').classList.toggle('collapsed');
            }});
        }});
        document.querySelectorAll('.provenance h3').forEach(function(h) {{
            h.addEventListener('click', function() {{
                this.nextElementSibling.classList.toggle('expanded');
            }});
        }});
    </script>
</body>
</html>'''

    def _render_section(self, section: Dict[str, Any]) -> str:
        paragraphs = "".join(f"<p>{html.escape(p)}</p>" for p in section["paragraphs"])
        tables = "".join(section["tables"])
        figures = "".join(f'<div class="figure">{f}</div>' for f in section["figures"])
        return f'''
    <div class="section">
        <div class="section-header">
            <div class="section-number">{section["number"]}</div>
            <div class="section-title">{html.escape(section["title"])}</div>
            <div class="section-toggle">&#9660;</div>
        </div>
        <div class="section-body">
            {paragraphs}
            {tables}
            {figures}
        </div>
    </div>'''

    def _render_summary(self) -> str:
        if not self.summary:
            return ""
        paragraphs = self.summary.strip().split("\n\n")
        body = "".join(f"<p>{html.escape(p.strip())}</p>" for p in paragraphs if p.strip())
        return f'''
    <div class="summary-section">
        <h2>Summary</h2>
        {body}
    </div>'''

    def _render_provenance(self) -> str:
        items = []
        for key, value in self.provenance.items():
            if isinstance(value, list):
                val_str = ", ".join(html.escape(str(v)) for v in value)
            elif isinstance(value, dict):
                val_str = "<br>".join(
                    f"{html.escape(str(k))}: {html.escape(str(v))}" for k, v in value.items()
                )
            else:
                val_str = html.escape(str(value))
            items.append(f"<dt>{html.escape(str(key))}</dt><dd>{val_str}</dd>")
        dl = "\n            ".join(items)
        return f'''
    <div class="provenance">
        <h3>Provenance &#9660;</h3>
        <div class="provenance-body">
            <dl>
            {dl}
            </dl>
        </div>
    </div>'''


def results_table(rows: List[Dict[str, Any]], columns: Optional[List[str]] = None) -> str:
    """Render a list of dicts as an HTML table."""
    if not rows:
        return '<p class="no-data">No results</p>'
    cols = columns or list(rows[0].keys())
    header = "".join(f"<th>{html.escape(str(c))}</th>" for c in cols)
    body_rows = []
    for row in rows:
        cells = "".join(f"<td>{html.escape(_format_cell(row.get(c)))}</td>" for c in cols)
        body_rows.append(f"<tr>{cells}</tr>")
    return f"<table><thead><tr>{header}</tr></thead><tbody>{''.join(body_rows)}</tbody></table>"


def frame_table(frame: pd.DataFrame, max_rows: int = 25, index_label: Optional[str] = None) -> str:
    """Render the first ``max_rows`` of a DataFrame, index included."""
    if frame.empty:
        return '<p class="no-data">No results</p>'
    label = index_label or frame.index.name or ""
    rows = [
        {label: idx, **row.to_dict()}
        for idx, row in frame.head(max_rows).iterrows()
    ]
    return results_table(rows, [label] + [str(c) for c in frame.columns])


def _format_cell(value: Any) -> str:
    if value is None:
        return "NA"
    if isinstance(value, float):
        if value != value:
            return "NA"
        if value != 0 and (abs(value) < 1e-3 or abs(value) >= 1e5):
            return f"{value:.2e}"
        return f"{value:.3f}"
    return str(value)
