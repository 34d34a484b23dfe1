"""
Mailbox forwarding setup.
"""

from __future__ import annotations

import csv
from pathlib import Path

from adminkit.core.job import Job, JobContext
from adminkit.core.logging import get_logger
from adminkit.core.models import ForwardingRule, ForwardingState
from adminkit.core.safety import OperationType
from adminkit.platform.powershell import format_bool, quote
from adminkit.tasks.exchange import ExchangeOnline

logger = get_logger(__name__)

TRUE_VALUES = {"yes", "y", "true", "1"}
FALSE_VALUES = {"no", "n", "false", "0"}


def parse_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"Not a boolean: {value!r}")


def load_rules(csv_path: Path) -> list[ForwardingRule]:
    """Read forwarding rules from a CSV with Mailbox and ForwardTo columns."""
    rules: list[ForwardingRule] = []
    with open(csv_path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        missing = {"Mailbox", "ForwardTo"} - set(reader.fieldnames or [])
        if missing:
            raise ValueError(f"{csv_path} is missing column(s): {', '.join(sorted(missing))}")

        for line_number, row in enumerate(reader, start=2):
            mailbox = (row.get("Mailbox") or "").strip()
            forward_to = (row.get("ForwardTo") or "").strip()
            if not mailbox and not forward_to:
                continue
            if not mailbox or not forward_to:
                raise ValueError(f"{csv_path}:{line_number}: Mailbox and ForwardTo are required")
            try:
                rules.append(
                    ForwardingRule(
                        mailbox=mailbox,
                        forward_to=forward_to,
                        keep_copy=parse_bool(row.get("KeepCopy"), True),
                        external=parse_bool(row.get("External"), True),
                    )
                )
            except ValueError as e:
                raise ValueError(f"{csv_path}:{line_number}: {e}") from e
    return rules


class MailboxForwarding:
    """Reads and changes mailbox forwarding."""

    def __init__(self, exchange: ExchangeOnline) -> None:
        self.exchange = exchange

    def get(self, mailbox: str) -> ForwardingState | None:
        rows = self.exchange.run_json(
            f"Get-Mailbox -Identity {quote(mailbox)} -ErrorAction SilentlyContinue"
            " | Select-Object PrimarySmtpAddress, ForwardingAddress,"
            " ForwardingSmtpAddress, DeliverToMailboxAndForward"
        )
        if not rows:
            return None
        row = rows[0]
        return ForwardingState(
            mailbox=row.get("PrimarySmtpAddress") or mailbox,
            forwarding_address=row.get("ForwardingAddress") or None,
            forwarding_smtp_address=row.get("ForwardingSmtpAddress") or None,
            deliver_to_mailbox_and_forward=bool(row.get("DeliverToMailboxAndForward")),
        )

    def build_set_script(self, rule: ForwardingRule) -> str:
        if rule.external:
            target = rule.forward_to
            if not target.lower().startswith("smtp:"):
                target = f"smtp:{target}"
            forward = f"-ForwardingSmtpAddress {quote(target)} -ForwardingAddress $null"
        else:
            forward = f"-ForwardingAddress {quote(rule.forward_to)} -ForwardingSmtpAddress $null"
        return (
            f"Set-Mailbox -Identity {quote(rule.mailbox)} {forward}"
            f" -DeliverToMailboxAndForward {format_bool(rule.keep_copy)}"
        )

    def set(self, rule: ForwardingRule, dry_run: bool = False) -> tuple[bool, str]:
        script = self.build_set_script(rule)
        if dry_run:
            logger.info("Dry run: would set forwarding", mailbox=rule.mailbox, script=script)
            return True, f"Would forward {rule.mailbox} to {rule.forward_to}"

        result = self.exchange.run(script)
        if not result.success:
            return False, f"{rule.mailbox}: {result.error_text()}"

        logger.info(
            "Forwarding set",
            mailbox=rule.mailbox,
            forward_to=rule.forward_to,
            keep_copy=rule.keep_copy,
        )
        return True, f"Forwarding {rule.mailbox} to {rule.forward_to}"

    def clear(self, mailbox: str, dry_run: bool = False) -> tuple[bool, str]:
        script = (
            f"Set-Mailbox -Identity {quote(mailbox)} -ForwardingSmtpAddress $null"
            " -ForwardingAddress $null -DeliverToMailboxAndForward $false"
        )
        if dry_run:
            return True, f"Would clear forwarding on {mailbox}"

        result = self.exchange.run(script)
        if not result.success:
            return False, f"{mailbox}: {result.error_text()}"
        logger.info("Forwarding cleared", mailbox=mailbox)
        return True, f"Cleared forwarding on {mailbox}"


class SetForwardingJob(Job[list[str]]):
    """Apply forwarding rules one mailbox at a time."""

    operation_type = OperationType.MODIFY

    def __init__(
        self,
        forwarding: MailboxForwarding,
        rules: list[ForwardingRule],
        dry_run: bool = False,
    ) -> None:
        super().__init__(
            name="set_forwarding",
            description=f"Set forwarding on {len(rules)} mailbox(es)",
        )
        self.forwarding = forwarding
        self.rules = rules
        self.dry_run = dry_run

    @property
    def target(self) -> str:
        if len(self.rules) == 1:
            return self.rules[0].mailbox.split("@")[0]
        return f"{len(self.rules)}-MAILBOXES"

    def validate(self) -> list[str]:
        errors = []
        if not self.rules:
            errors.append("No forwarding rules given")
        for rule in self.rules:
            if rule.external and "@" not in rule.forward_to:
                errors.append(f"{rule.forward_to} is not an SMTP address")
            if rule.mailbox.lower() == rule.forward_to.lower():
                errors.append(f"{rule.mailbox} cannot forward to itself")
        return errors

    def get_plan(self) -> str:
        return "\n".join(
            f"{r.mailbox} -> {r.forward_to}"
            + (" (keep copy)" if r.keep_copy else " (no copy)")
            for r in self.rules
        )

    def execute(self, context: JobContext) -> list[str]:
        applied: list[str] = []
        context.update_progress(current=0, total=len(self.rules), stage="forwarding")
        for index, rule in enumerate(self.rules, 1):
            context.check_cancelled()
            ok, message = self.forwarding.set(rule, dry_run=self.dry_run)
            if ok:
                applied.append(message)
            else:
                context.add_warning(message)
            context.update_progress(current=index, message=message)

        if not applied:
            raise RuntimeError("No forwarding rule could be applied")
        return applied


class ClearForwardingJob(Job[list[str]]):
    """Remove forwarding from mailboxes."""

    operation_type = OperationType.MODIFY

    def __init__(
        self,
        forwarding: MailboxForwarding,
        mailboxes: list[str],
        dry_run: bool = False,
    ) -> None:
        super().__init__(
            name="clear_forwarding",
            description=f"Clear forwarding on {len(mailboxes)} mailbox(es)",
        )
        self.forwarding = forwarding
        self.mailboxes = mailboxes
        self.dry_run = dry_run

    @property
    def target(self) -> str:
        if len(self.mailboxes) == 1:
            return self.mailboxes[0].split("@")[0]
        return f"{len(self.mailboxes)}-MAILBOXES"

    def validate(self) -> list[str]:
        return [] if self.mailboxes else ["No mailboxes given"]

    def get_plan(self) -> str:
        return "\n".join(f"Clear forwarding on {m}" for m in self.mailboxes)

    def execute(self, context: JobContext) -> list[str]:
        cleared: list[str] = []
        for mailbox in self.mailboxes:
            context.check_cancelled()
            ok, message = self.forwarding.clear(mailbox, dry_run=self.dry_run)
            if ok:
                cleared.append(message)
            else:
                context.add_warning(message)
        if not cleared:
            raise RuntimeError("No mailbox could be updated")
        return cleared
