"""System prompt and tool-result message formatting."""

from __future__ import annotations

TOOL_RESULTS_HEADER = "TOOL RESULTS:"
TOOL_RESULTS_FOOTER = "Continue your task based on these results."

_LANGUAGE_NAMES = {"en": "English", "pt-BR": "Brazilian Portuguese"}

_SYSTEM_PROMPT = """\
You are a spreadsheet agent working on the workbook {workbook}. You complete tasks \
autonomously by calling tools.

How to work:
1. Query first. Use list_sheets, get_used_range, get_headers and get_range_values to \
learn the current state before changing anything.
2. Then act. Every action tool changes the workbook; several related changes can be \
sent together with execute_macro.
3. Tool results are sent back to you. Read them and continue: correct anything that \
failed, and stop calling tools once the task is done.

Rules:
- Before creating a chart, check the headers and the used range of the data.
- Before creating a pivot summary, check whether the destination sheet exists.
- Formulas are written as text starting with '='; they are not evaluated for you.
- Make headers bold with format_range and use autofit_columns after writing data.
- The user may have to approve your actions before they run. Describe what you are \
about to change in one or two sentences.
- Reply in {language}. Keep the final answer short and say what changed.
"""


def build_system_prompt(*, workbook: str, language: str = "en", context: str = "") -> str:
    prompt = _SYSTEM_PROMPT.format(
        workbook=workbook or "(none)",
        language=_LANGUAGE_NAMES.get(language, "English"),
    )
    if context:
        prompt += f"\nCurrent workbook context:\n{context}\n"
    return prompt


def success_line(tool: str, message: str) -> str:
    return f"- SUCCESS {tool}: {message}"


def error_line(tool: str, message: str) -> str:
    return f"- ERROR {tool}: {message}"


def format_tool_results(lines: list[str]) -> str:
    return "\n".join([TOOL_RESULTS_HEADER, *lines, TOOL_RESULTS_FOOTER])


def is_tool_results(content: str) -> bool:
    return content.startswith(TOOL_RESULTS_HEADER)
