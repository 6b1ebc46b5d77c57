"""
SLA Digest Messages
====================

Composes chat digests for work item update SLA violations.

Pure string formatting; no I/O.
"""

from typing import Dict, List

from src.sla.domain import Violation

MAX_VIOLATIONS_TO_DISPLAY = 20
MAX_DIRECT_REPORTS_TO_SHOW_DETAILS = 5
MAX_VIOLATIONS_PER_DIRECT_REPORT = 10

_TYPE_EMOJIS = {
    "bug": "🐛",
    "task": "📋",
    "user story": "📖",
    "feature": "✨",
}
_DEFAULT_EMOJI = "📌"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def _most_overdue_first(violations: List[Violation]) -> List[Violation]:
    return sorted(violations, key=lambda v: v.days_since_update, reverse=True)


class DigestComposer:
    """Builds individual and manager digests from violation lists."""

    def type_emoji(self, work_item_type: str) -> str:
        return _TYPE_EMOJIS.get(work_item_type.lower(), _DEFAULT_EMOJI)

    def compose_digest(self, violations: List[Violation]) -> str:
        """
        Digest listing one subscriber's own violations.

        Most overdue first, capped at MAX_VIOLATIONS_TO_DISPLAY with a
        trailing count of the rest.
        """
        if not violations:
            return ""

        lines = [
            "⚠️ SLA Violation Alert",
            "",
            f"You have {_plural(len(violations), 'work item')} that haven't been "
            "updated within SLA thresholds:",
            "",
        ]

        ordered = _most_overdue_first(violations)
        for violation in ordered[:MAX_VIOLATIONS_TO_DISPLAY]:
            lines.append(
                f"{self.type_emoji(violation.work_item_type)} {violation.work_item_type} "
                f"#{violation.work_item_id}: {violation.title}"
            )
            lines.append(
                f"   - Last updated: {_plural(violation.days_since_update, 'day')} ago "
                f"(SLA: {_plural(violation.sla_threshold_days, 'day')})"
            )
            lines.append(f"   - View: {violation.url}")
            lines.append("")

        remaining = len(ordered) - MAX_VIOLATIONS_TO_DISPLAY
        if remaining > 0:
            lines.append(f"...and {_plural(remaining, 'more violation')}.")
            lines.append("")

        lines.append("Please review and update these items to meet SLA requirements.")
        return "\n".join(lines) + "\n"

    def compose_manager_digest(
        self,
        violations_by_owner: Dict[str, List[Violation]],
        manager_email: str
    ) -> str:
        """
        Digest covering a manager and their direct reports.

        Teams of up to MAX_DIRECT_REPORTS_TO_SHOW_DETAILS reports get a
        per-person breakdown; larger teams get counts only.
        """
        if not violations_by_owner:
            return ""

        total = sum(len(v) for v in violations_by_owner.values())
        own = violations_by_owner.get(manager_email, [])
        reports = {
            email: violations
            for email, violations in violations_by_owner.items()
            if email != manager_email
        }

        lines = [
            "📊 **Manager SLA Violation Report**",
            "",
            "**Summary:**",
            f"- Total violations: **{total}**",
            f"- Your violations: **{len(own)}**",
            f"- Direct reports with violations: **{len(reports)}**",
            "",
        ]

        if own:
            lines.append("### 👤 Your Violations")
            lines.append("")
            lines.extend(self._violation_list(own, MAX_VIOLATIONS_TO_DISPLAY))
            lines.append("")

        if reports:
            lines.append("### 👥 Team Member Violations")
            lines.append("")
            ranked = sorted(reports.items(), key=lambda kv: len(kv[1]), reverse=True)

            if len(reports) <= MAX_DIRECT_REPORTS_TO_SHOW_DETAILS:
                for email, violations in ranked:
                    lines.append(f"**{email}** ({_plural(len(violations), 'violation')}):")
                    lines.extend(self._violation_list(violations, MAX_VIOLATIONS_PER_DIRECT_REPORT))
                    lines.append("")
            else:
                lines.append("**Team Summary** (showing counts only due to team size):")
                lines.append("")
                for email, violations in ranked:
                    lines.append(f"- **{email}**: {_plural(len(violations), 'violation')}")
                lines.append("")
                lines.append(
                    "💡 *For detailed information, ask me to check SLA violations "
                    "for specific team members.*"
                )

        lines.append("")
        lines.append("---")
        lines.append(
            '💡 *Tip: You can ask me to check SLA violations anytime with '
            '"check my SLA violations"*'
        )
        return "\n".join(lines) + "\n"

    def _violation_list(self, violations: List[Violation], max_to_show: int) -> List[str]:
        ordered = _most_overdue_first(violations)
        lines = []
        for violation in ordered[:max_to_show]:
            lines.append(
                f"{self.type_emoji(violation.work_item_type)} **{violation.work_item_type} "
                f"#{violation.work_item_id}**: {violation.title}"
            )
            lines.append(
                f"   - Last updated: **{_plural(violation.days_since_update, 'day')}** ago "
                f"(SLA: {_plural(violation.sla_threshold_days, 'day')})"
            )
            lines.append(f"   - [View work item]({violation.url})")
        if len(ordered) > max_to_show:
            lines.append(f"   - *...and {len(ordered) - max_to_show} more*")
        return lines
