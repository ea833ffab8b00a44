"""Shortlist exports: Excel workbook and interactive HTML dashboard.

A search result is easier to discuss with a client as a spreadsheet or a
chart than as JSON. ``ReportGenerator`` turns one ``SearchResult`` into:
- an Excel workbook (experts sheet plus a summary sheet)
- a standalone Plotly HTML dashboard (rates, value scores, rating vs rate)

Missing ratings stay NaN and are left out of the charts.
"""

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pandas as pd
import plotly.graph_objects as go
from plotly.subplots import make_subplots

from config.settings import GlobalConfig, get_config
from clarity_pilot.exceptions import ReportGenerationError
from clarity_pilot.logger import get_logger
from clarity_pilot.schemas import SearchResult

log = get_logger(__name__)

EXPERT_COLUMNS = [
    "name",
    "username",
    "rate_per_minute",
    "rating",
    "review_count",
    "value_score",
    "total_calls",
    "profile_url",
    "bio",
]


class ReportGenerator:
    """Writes shortlist exports under ``config.output_dir``.

    Both files from one instance share a timestamp suffix, so an Excel file
    and its dashboard sort next to each other.
    """

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()
        self._timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")

    def _ensure_output_dir(self) -> Path:
        output_dir = self.config.output_dir
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ReportGenerationError(
                report_type="output",
                reason=f"{output_dir} is not a usable directory: {exc}",
                output_path=str(output_dir),
            ) from exc
        return output_dir

    def _result_to_dataframe(self, result: SearchResult) -> pd.DataFrame:
        records = [
            {
                "name": expert.name,
                "username": expert.username,
                "rate_per_minute": expert.rate_per_minute,
                "rating": expert.rating,
                "review_count": expert.review_count,
                "value_score": expert.value_score,
                "total_calls": expert.total_calls,
                "profile_url": expert.profile_url,
                "bio": expert.bio,
            }
            for expert in result.experts
        ]
        df = pd.DataFrame(records, columns=EXPERT_COLUMNS)
        for column in ("rate_per_minute", "rating", "review_count", "value_score"):
            df[column] = pd.to_numeric(df[column], errors="coerce")
        return df

    def _slug(self, result: SearchResult) -> str:
        return "".join(ch if ch.isalnum() else "_" for ch in result.query.lower()).strip("_") or "search"

    def generate_excel(self, result: SearchResult, filename: str | None = None) -> Path:
        """Write the shortlist to an "Experts" sheet plus a "Summary" sheet.

        Raises:
            ReportGenerationError: If the workbook cannot be written.
        """
        output_dir = self._ensure_output_dir()
        filename = filename or f"clarity_{self._slug(result)}_{self._timestamp}"
        output_path = output_dir / f"{filename}.xlsx"

        log.info("Generating Excel report", output_path=str(output_path))

        try:
            df = self._result_to_dataframe(result)
            with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
                df.to_excel(writer, sheet_name="Experts", index=False)
                pd.DataFrame([self._generate_summary_stats(result, df)]).to_excel(
                    writer, sheet_name="Summary", index=False
                )
        except Exception as exc:
            raise ReportGenerationError(
                report_type="Excel",
                reason=str(exc),
                output_path=str(output_path),
            ) from exc

        log.info("Excel report generated successfully", output_path=str(output_path), experts=len(df))
        return output_path

    def _generate_summary_stats(self, result: SearchResult, df: pd.DataFrame) -> dict[str, Any]:
        scored = df.dropna(subset=["value_score"])
        best = scored.sort_values("value_score", ascending=False, kind="stable").head(1)
        return {
            "Report Generated": datetime.now(UTC).isoformat(),
            "Query": result.query,
            "Category URL": result.category_url,
            "Page": result.page,
            "Experts": len(df),
            "Enriched": result.enriched,
            "Average Rate": f"${df['rate_per_minute'].mean():.2f}/min" if len(df) > 0 else "N/A",
            "Best Value": best["name"].iloc[0] if len(best) > 0 else "N/A",
        }

    def generate_dashboard(self, result: SearchResult, filename: str | None = None) -> Path:
        """Write a standalone HTML dashboard for the shortlist.

        Raises:
            ReportGenerationError: If there are no experts or writing fails.
        """
        output_dir = self._ensure_output_dir()
        filename = filename or f"clarity_{self._slug(result)}_dashboard_{self._timestamp}"
        output_path = output_dir / f"{filename}.html"

        df = self._result_to_dataframe(result)
        if len(df) == 0:
            raise ReportGenerationError(
                report_type="Dashboard",
                reason="No experts available for visualization",
                output_path=str(output_path),
            )

        log.info("Generating HTML dashboard", output_path=str(output_path))

        try:
            fig = make_subplots(
                rows=2,
                cols=2,
                subplot_titles=(
                    "Rate Distribution",
                    "Value Score",
                    "Rating vs Rate",
                    "Most Booked",
                ),
                vertical_spacing=0.14,
                horizontal_spacing=0.1,
            )

            fig.add_trace(
                go.Histogram(
                    x=df["rate_per_minute"],
                    nbinsx=15,
                    marker_color="#3498db",
                    hovertemplate="Rate: $%{x}/min<br>Experts: %{y}<extra></extra>",
                ),
                row=1,
                col=1,
            )

            scored = df.dropna(subset=["value_score"]).sort_values("value_score")
            fig.add_trace(
                go.Bar(
                    y=scored["name"],
                    x=scored["value_score"],
                    orientation="h",
                    marker_color="#27ae60",
                    text=scored["value_score"],
                    textposition="auto",
                    hovertemplate="<b>%{y}</b><br>Value score: %{x}<extra></extra>",
                ),
                row=1,
                col=2,
            )

            rated = df.dropna(subset=["rating"])
            fig.add_trace(
                go.Scatter(
                    x=rated["rate_per_minute"],
                    y=rated["rating"],
                    mode="markers",
                    text=rated["name"],
                    marker={"size": 10, "color": "#9b59b6"},
                    hovertemplate="<b>%{text}</b><br>$%{x}/min<br>%{y} stars<extra></extra>",
                ),
                row=2,
                col=1,
            )

            booked = df.sort_values("total_calls", ascending=False).head(10).iloc[::-1]
            fig.add_trace(
                go.Bar(
                    y=booked["name"],
                    x=booked["total_calls"],
                    orientation="h",
                    marker_color="#f39c12",
                    hovertemplate="<b>%{y}</b><br>Calls: %{x}<extra></extra>",
                ),
                row=2,
                col=2,
            )

            fig.update_layout(
                title={
                    "text": (
                        f"<b>Clarity Shortlist: {result.query}</b><br>"
                        f"<sup>{result.category_url} | Experts: {len(df)} | "
                        f"Enriched: {result.enriched} | "
                        f"Generated: {datetime.now(UTC).strftime('%Y-%m-%d %H:%M UTC')}</sup>"
                    ),
                    "x": 0.5,
                    "xanchor": "center",
                },
                showlegend=False,
                height=800,
                template="plotly_white",
                font={"family": "Arial, sans-serif"},
            )
            fig.update_xaxes(title_text="USD per minute", row=1, col=1)
            fig.update_xaxes(title_text="USD per minute", row=2, col=1)
            fig.update_yaxes(title_text="Stars", row=2, col=1)

            fig.write_html(str(output_path), include_plotlyjs=True, full_html=True)
        except Exception as exc:
            raise ReportGenerationError(
                report_type="Dashboard",
                reason=str(exc),
                output_path=str(output_path),
            ) from exc

        log.info("HTML dashboard generated successfully", output_path=str(output_path), experts=len(df))
        return output_path

    def generate_all(self, result: SearchResult) -> dict[str, Path]:
        return {
            "excel": self.generate_excel(result),
            "dashboard": self.generate_dashboard(result),
        }
