"""
Markdown renderings of generated documents.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from runstore.core.constants import RunFamily
from runstore.domain.run import utc_now

# Section title, document field
INSIGHT_TEXT_SECTIONS = (
    ("Code Organization", "organization"),
    ("Entry Points Analysis", "entryPointsAnalysis"),
    ("Orphaned Files Analysis", "orphanedFilesAnalysis"),
    ("Folder Reorganization Suggestions", "folderReorganization"),
)

USER_PERSPECTIVE_SECTIONS = (
    ("GUI", "gui"),
    ("CLI", "cli"),
    ("API", "api"),
    ("CI/CD", "cicd"),
)

MAX_FILES_RENDERED = 20



def _text(value: Any) -> str:
    """Model output is free-form JSON; anything that is not text is shown as compact JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    return [value] if value not in (None, "") else []


def _records(value: Any) -> list[dict[str, Any]]:
    return [entry for entry in _as_list(value) if isinstance(entry, dict)]


def _bullets(values: Any) -> list[str]:
    return [f"- {_text(value)}" for value in _as_list(values)] + [""]


def _paragraph(heading: str, value: Any) -> list[str]:
    return [heading, "", _text(value), ""]


def _finding_lines(finding: Any) -> list[str]:
    """A finding is either plain text or ``{title, description, relevantFiles, relevantFunctions}``."""
    if not isinstance(finding, dict):
        return [f"- {_text(finding)}"]

    lines = [f"- **{_text(finding.get('title', ''))}**: {_text(finding.get('description', ''))}"]
    if finding.get("relevantFiles"):
        lines.append(f"  - Files: {', '.join(_text(f) for f in _as_list(finding['relevantFiles']))}")
    if finding.get("relevantFunctions"):
        lines.append(f"  - Functions: {', '.join(_text(f) for f in _as_list(finding['relevantFunctions']))}")
    return lines


class MarkdownFormatter:
    """
    Renders product documentation and architecture insights as Markdown.
    """

    def _header(self, title: str, generated_at: Optional[datetime]) -> list[str]:
        moment = generated_at or utc_now()
        stamp = moment.strftime("%Y-%m-%d %H:%M:%S") + " UTC"
        local = moment.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        return [f"# {title}", "", f"*Generated: {local} ({stamp})*", "", "---", ""]

    def render(
        self,
        family: RunFamily,
        document: dict[str, Any],
        generated_at: Optional[datetime] = None,
    ) -> str:
        """Render a consolidated document of the given family."""
        if family == RunFamily.ARCHITECTURE_INSIGHTS:
            return self.render_insights(document, generated_at)
        return self.render_product_docs(document, generated_at)

    def render_insights(
        self,
        insights: dict[str, Any],
        generated_at: Optional[datetime] = None,
        title: str = "AI Architecture Insights",
    ) -> str:
        """Render architecture insights."""
        lines = self._header(title, generated_at)

        if insights.get("overallAssessment"):
            lines += _paragraph("## Overall Architecture Assessment", insights["overallAssessment"])

        if insights.get("strengths"):
            lines += ["## Strengths", ""] + _bullets(insights["strengths"])

        if insights.get("issues"):
            lines += ["## Issues & Concerns", ""]
            for issue in _as_list(insights["issues"]):
                lines += _finding_lines(issue)
            lines.append("")

        for heading, field in INSIGHT_TEXT_SECTIONS:
            if insights.get(field):
                lines += _paragraph(f"## {heading}", insights[field])

        if insights.get("recommendations"):
            lines += ["## Recommendations", ""]
            for recommendation in _as_list(insights["recommendations"]):
                lines += _finding_lines(recommendation)
            lines.append("")

        if insights.get("priorities"):
            lines += ["## Refactoring Priorities", ""]
            for priority in _as_list(insights["priorities"]):
                lines += _finding_lines(priority)
            lines.append("")

        if insights.get("cursorPrompt"):
            lines += ["---", "", "## LLM Refactoring Prompt", "", "```", _text(insights["cursorPrompt"]), "```", ""]

        return "\n".join(lines)

    def render_iteration(
        self,
        insights: dict[str, Any],
        iteration: int,
        max_iterations: Optional[int] = None,
        generated_at: Optional[datetime] = None,
    ) -> str:
        """Render one insight iteration."""
        of_total = f" of {max_iterations}" if max_iterations else ""
        return self.render_insights(
            insights,
            generated_at,
            title=f"AI Architecture Insights (Iteration {iteration}{of_total})",
        )

    def render_product_docs(
        self,
        docs: dict[str, Any],
        generated_at: Optional[datetime] = None,
    ) -> str:
        """Render product documentation."""
        lines = self._header("Product Documentation", generated_at)

        if docs.get("overview"):
            lines += _paragraph("## Product Overview", docs["overview"])

        if docs.get("whatItDoes"):
            lines += ["## What It Does", ""] + _bullets(docs["whatItDoes"])

        perspective = docs.get("userPerspective") or {}
        if isinstance(perspective, dict) and any(perspective.get(f) for _, f in USER_PERSPECTIVE_SECTIONS):
            lines += ["## User Perspective", ""]
            for heading, field in USER_PERSPECTIVE_SECTIONS:
                if perspective.get(field):
                    lines += [f"### {heading}", ""] + _bullets(perspective[field])

        if docs.get("workflowIntegration"):
            lines += ["## Workflow Integration", ""] + _bullets(docs["workflowIntegration"])

        if docs.get("problemsSolved"):
            lines += ["## Problems Solved", ""] + _bullets(docs["problemsSolved"])

        if docs.get("architecture"):
            lines += _paragraph("## Architecture Summary", docs["architecture"])

        modules = _records(docs.get("modules"))
        if modules:
            lines += ["## Module Documentation", ""]
            for module in modules:
                lines += self._module_lines(module)

        files = _records(docs.get("fileSummaries"))
        if files:
            lines += [
                "## File-Level Documentation",
                "",
                f"*Detailed documentation for {len(files)} files*",
                "",
            ]
            for summary in files[:MAX_FILES_RENDERED]:
                lines += self._file_lines(summary)
            if len(files) > MAX_FILES_RENDERED:
                lines += [f"*... and {len(files) - MAX_FILES_RENDERED} more files*", ""]

        return "\n".join(lines)

    def _module_lines(self, module: dict[str, Any]) -> list[str]:
        module_type = f" ({_text(module['moduleType'])})" if module.get("moduleType") else ""
        lines = [f"### {_text(module.get('module', ''))}{module_type}", ""]
        if module.get("summary"):
            lines += [_text(module["summary"]), ""]
        if module.get("capabilities"):
            lines += ["**Capabilities:**"] + _bullets(module["capabilities"])
        if module.get("endpoints"):
            lines.append("**Endpoints:**")
            for endpoint in _records(module["endpoints"]):
                method = f"{_text(endpoint['method'])} " if endpoint.get("method") else ""
                lines.append(
                    f"- {method}{_text(endpoint.get('path', ''))}: {_text(endpoint.get('description', ''))}"
                )
            lines.append("")
        if module.get("commands"):
            lines.append("**Commands:**")
            for command in _records(module["commands"]):
                lines.append(f"- `{_text(command.get('command', ''))}`: {_text(command.get('description', ''))}")
            lines.append("")
        if module.get("workers"):
            lines.append("**Workers:**")
            for worker in _records(module["workers"]):
                lines.append(f"- {_text(worker.get('name', ''))}: {_text(worker.get('description', ''))}")
                if worker.get("jobFlow"):
                    lines.append(f"  - Flow: {_text(worker['jobFlow'])}")
            lines.append("")
        return lines

    def _file_lines(self, summary: dict[str, Any]) -> list[str]:
        lines = [f"### {_text(summary.get('file', ''))}", ""]
        if summary.get("role"):
            lines += [f"**Role:** {_text(summary['role'])}", ""]
        if summary.get("purpose"):
            lines += [f"**Purpose:** {_text(summary['purpose'])}", ""]
        if summary.get("userVisibleActions"):
            lines += ["**User Actions:**"] + _bullets(summary["userVisibleActions"])
        if summary.get("keyFunctions"):
            lines.append("**Key Functions:**")
            for func in _records(summary["keyFunctions"]):
                lines.append(f"- `{_text(func.get('name', ''))}`: {_text(func.get('desc', ''))}")
                if func.get("inputs"):
                    lines.append(f"  - Inputs: {_text(func['inputs'])}")
                if func.get("outputs"):
                    lines.append(f"  - Outputs: {_text(func['outputs'])}")
            lines.append("")
        return lines
