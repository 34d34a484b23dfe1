"""
Exchange Online access.

Each call runs in a fresh PowerShell process, so every script connects,
runs its body and disconnects again.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from adminkit.core.logging import get_logger
from adminkit.platform.base import CommandError, CommandResult
from adminkit.platform.powershell import JSON_SUFFIX, PowerShell, parse_powershell_json, quote

if TYPE_CHECKING:
    from adminkit.core.config import ExchangeConfig

logger = get_logger(__name__)


class ExchangeOnline:
    """Runs Exchange Online cmdlets inside a connect/disconnect wrapper."""

    MODULE = "ExchangeOnlineManagement"

    def __init__(self, powershell: PowerShell, config: ExchangeConfig) -> None:
        self.powershell = powershell
        self.config = config

    def connect_command(self) -> str:
        if self.config.uses_app_auth:
            return (
                f"Connect-ExchangeOnline -AppId {quote(self.config.app_id or '')}"
                f" -CertificateThumbprint {quote(self.config.certificate_thumbprint or '')}"
                f" -Organization {quote(self.config.organization or '')}"
                " -ShowBanner:$false"
            )
        if self.config.user_principal_name:
            return (
                f"Connect-ExchangeOnline -UserPrincipalName {quote(self.config.user_principal_name)}"
                " -ShowBanner:$false"
            )
        return "Connect-ExchangeOnline -ShowBanner:$false"

    def wrap(self, body: str) -> str:
        return (
            f"Import-Module {self.MODULE}; {self.connect_command()}; "
            f"try {{ {body} }} finally {{ Disconnect-ExchangeOnline -Confirm:$false | Out-Null }}"
        )

    def run(self, body: str) -> CommandResult:
        return self.powershell.run(self.wrap(body), timeout=self.config.command_timeout_seconds)

    def run_json(self, body: str) -> list[dict[str, Any]]:
        result = self.run(body.rstrip() + JSON_SUFFIX)
        if not result.success:
            raise CommandError("Exchange Online command failed", result)
        return parse_powershell_json(result.stdout)
