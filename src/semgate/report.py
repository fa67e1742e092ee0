from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .constants import SEVERITY_ORDER, Conclusion, EventKind, Limits, Severity
from .formatting import fence, humanize_duration_ms, language_tag_for_file, truncate
from .models import Finding, ScanOutcome, Verdict

HEADER = "🔍 **Semgrep Security Scan Results**"
DOCS_URL = "https://semgrep.dev/docs/"

_SEVERITY_EMOJI = {
    Severity.ERROR: "🚨",
    Severity.WARNING: "⚠️",
    Severity.INFO: "ℹ️",
}


def _counts(findings: Iterable[Finding]) -> Dict[Severity, int]:
    counts = {severity: 0 for severity in Severity}
    for finding in findings:
        counts[finding.severity] += 1
    return counts


def classify(findings: Iterable[Finding]) -> Verdict:
    """Any ERROR fails, else any WARNING is neutral, else success."""
    counts = _counts(findings)
    errors = counts[Severity.ERROR]
    warnings = counts[Severity.WARNING]
    infos = counts[Severity.INFO]

    if errors > 0:
        return Verdict(
            conclusion=Conclusion.FAILURE,
            title=f"Semgrep found {errors} critical security issue(s)",
            summary=(
                f"🚨 **{errors}** critical security issues found.\n"
                f"⚠️ **{warnings}** warnings.\n"
                f"ℹ️ **{infos}** informational findings."
            ),
        )
    if warnings > 0:
        return Verdict(
            conclusion=Conclusion.NEUTRAL,
            title=f"Semgrep found {warnings} warning(s)",
            summary=(
                f"⚠️ **{warnings}** potential security issues found.\n"
                f"ℹ️ **{infos}** informational findings.\n\n"
                "Consider reviewing these warnings."
            ),
        )
    return Verdict(
        conclusion=Conclusion.SUCCESS,
        title="No security issues found",
        summary=f"✅ Semgrep scan completed successfully.\nℹ️ **{infos}** informational findings.",
    )


def _line_label(finding: Finding) -> str:
    if finding.end_line and finding.end_line != finding.start_line:
        return f"{finding.start_line}-{finding.end_line}"
    return str(finding.start_line)


def _metadata_line(finding: Finding) -> str:
    meta = finding.metadata
    if meta is None:
        return ""
    parts: List[str] = []
    if meta.cwe:
        parts.append(f"🔗 **CWE:** {meta.cwe[0]}")
    if meta.owasp:
        parts.append(f"🛡️ **OWASP:** {meta.owasp[0]}")
    risk = [
        f"{label}: {value}"
        for label, value in (
            ("Confidence", meta.confidence),
            ("Impact", meta.impact),
            ("Likelihood", meta.likelihood),
        )
        if value
    ]
    if risk:
        parts.append(f"📊 **Risk:** {', '.join(risk)}")
    if meta.link:
        parts.append(f"📚 [Learn more]({meta.link})")
    return " | ".join(parts)


def _render_finding(index: int, finding: Finding) -> List[str]:
    lines = [
        f"#### {index}. {finding.rule_id}",
        "",
        f"📁 **File:** `{finding.path}`",
        f"📍 **Line:** {_line_label(finding)}",
        f"💬 **Issue:** {truncate(finding.message, Limits.MAX_MESSAGE_LENGTH)}",
        "",
    ]
    code = (finding.code or "").strip()
    if code:
        lines.extend(["**Code:**", fence(code, language_tag_for_file(finding.path)), ""])
    meta = _metadata_line(finding)
    if meta:
        lines.extend([meta, ""])
    lines.extend(["---", ""])
    return lines


def _severity_sections(findings: List[Finding], max_items: int) -> List[str]:
    lines: List[str] = []
    rendered = 0
    for severity in SEVERITY_ORDER:
        group = [f for f in findings if f.severity == severity]
        if not group:
            continue
        if rendered >= max_items:
            break
        lines.extend([f"### {_SEVERITY_EMOJI[severity]} {severity.value} ({len(group)})", ""])
        for index, finding in enumerate(group, start=1):
            if rendered >= max_items:
                break
            lines.extend(_render_finding(index, finding))
            rendered += 1
    remaining = len(findings) - rendered
    if remaining > 0:
        lines.extend([f"...and {remaining} more finding(s); see the full report below.", ""])
    return lines


def _provenance(event_kind: EventKind | str) -> List[str]:
    kind = event_kind.value if isinstance(event_kind, EventKind) else str(event_kind)
    return [
        f"*This scan was performed automatically when the pull request was {kind}.*",
        f"*Found issues? Check the [Semgrep documentation]({DOCS_URL}) for remediation guidance.*",
    ]


def render_comment(
    outcome: ScanOutcome,
    event_kind: EventKind | str,
    max_items: int = Limits.MAX_COMMENT_FINDINGS,
) -> str:
    """
    Render the pull request comment for a completed scan.

    Pure function of its inputs: the same outcome always renders the same text.
    The raw report is embedded whole; channels enforce their own size limits.
    """
    findings = list(outcome.findings)
    lines: List[str] = [HEADER, ""]

    if not findings:
        lines.extend(["🎉 No security issues found! ✅", ""])
    else:
        counts = _counts(findings)
        lines.extend(
            [
                f"Found {len(findings)} potential security issue(s) "
                f"(ERROR={counts[Severity.ERROR]}, WARNING={counts[Severity.WARNING]}, "
                f"INFO={counts[Severity.INFO]}):",
                "",
            ]
        )
        lines.extend(_severity_sections(findings, max_items))

    report = (outcome.report or "").strip("\n")
    if report.strip():
        lines.extend(
            [
                "<details>",
                "<summary>Full Semgrep report</summary>",
                "",
                fence(report),
                "",
                "</details>",
                "",
            ]
        )

    if outcome.truncated:
        lines.extend(["> ⚠️ Scanner output exceeded the size limit and was truncated.", ""])

    if outcome.scanner_errors:
        lines.extend(
            [
                f"> ⚠️ Semgrep reported {len(outcome.scanner_errors)} error(s) during the scan "
                f"({', '.join(sorted(set(outcome.scanner_errors)))}); results may be incomplete.",
                "",
            ]
        )

    lines.append(f"<sub>Scan duration: {humanize_duration_ms(outcome.duration_ms)}</sub>")
    lines.append("")
    lines.extend(_provenance(event_kind))
    return "\n".join(lines)


def render_check_text(outcome: ScanOutcome) -> str:
    """Detail text for the terminal status check: the raw report, or a short note."""
    report = (outcome.report or "").strip("\n")
    if report.strip():
        return fence(report)
    if outcome.findings:
        return "\n".join(
            f"- `{f.path}:{f.start_line}` **{f.severity.value}** {f.rule_id}" for f in outcome.findings
        )
    return "No findings."


def render_failure_comment(user_message: str, event_kind: Optional[EventKind | str] = None) -> str:
    lines = [
        "🚨 **Semgrep Security Scan Failed**",
        "",
        "The security scan encountered an error and could not be completed:",
        "",
        fence(user_message),
        "",
        "Please contact the maintainers if this issue persists.",
    ]
    if event_kind is not None:
        lines.extend(["", _provenance(event_kind)[0]])
    return "\n".join(lines)


def failure_verdict(user_message: str) -> Verdict:
    return Verdict(
        conclusion=Conclusion.FAILURE,
        title="Semgrep scan failed",
        summary=f"❌ Semgrep security scan encountered an error: {user_message}",
    )
