"""
Tests for CLI commands.

The service is replaced with a MagicMock; these tests check argument
handling and what the commands print.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from conftest import TEST_APPLE_ID, TEST_PASSWORD, TEST_TOKEN
from iloader import __version__
from iloader.cli.main import cli
from iloader.core.accounts import Account
from iloader.core.auth import AuthState, SessionHandle, TwoFactorRequired
from iloader.core.developer import AppId, AppIdList, Certificate
from iloader.core.device import DeviceInfo
from iloader.core.operations import (
    OperationKind,
    OperationSnapshot,
    OperationState,
    OperationStep,
    StepState,
)
from iloader.exceptions import DeletionDisabledError, InvalidCredentialsError


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def service() -> MagicMock:
    return MagicMock()


@pytest.fixture
def invoke(cli_runner, test_config, service):
    """Invoke the CLI with the mocked service in place."""

    def run(args, **kwargs):
        return cli_runner.invoke(cli, args, obj={"config": test_config, "service": service}, **kwargs)

    return run


@pytest.fixture
def account() -> Account:
    return Account(TEST_APPLE_ID, TEST_TOKEN, datetime(2024, 1, 2, 3, 4))


class TestRoot:
    def test_version(self, invoke) -> None:
        result = invoke(["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, invoke) -> None:
        result = invoke(["--help"])

        assert result.exit_code == 0
        for name in ("account", "certs", "appids", "sign", "install", "devices", "login"):
            assert name in result.output


class TestAccountLogin:
    """Tests for 'iloader account login'."""

    def test_login(self, invoke, service, account) -> None:
        """Should sign in without a code when none is required."""
        service.start_login.return_value = account

        result = invoke(["account", "login", TEST_APPLE_ID, "--password", TEST_PASSWORD])

        assert result.exit_code == 0
        assert f"Signed in as {TEST_APPLE_ID}" in result.output
        service.start_login.assert_called_once_with(TEST_APPLE_ID, TEST_PASSWORD, None)
        service.complete_two_factor.assert_not_called()

    def test_login_two_factor(self, invoke, service, account) -> None:
        """Should submit the code when a second factor is required."""
        pending = TwoFactorRequired(
            SessionHandle("s1", TEST_APPLE_ID, AuthState.AWAITING_SECOND_FACTOR)
        )
        service.start_login.return_value = pending
        service.complete_two_factor.return_value = account

        result = invoke([
            "account", "login", TEST_APPLE_ID,
            "--password", TEST_PASSWORD,
            "--code", " 123456 ",
        ])

        assert result.exit_code == 0
        assert "verification code" in result.output
        service.complete_two_factor.assert_called_once_with(pending, "123456")

    def test_login_prompts(self, invoke, service, account) -> None:
        service.start_login.return_value = account

        result = invoke(["account", "login", TEST_APPLE_ID], input=f"{TEST_PASSWORD}\n")

        assert result.exit_code == 0
        service.start_login.assert_called_once_with(TEST_APPLE_ID, TEST_PASSWORD, None)

    def test_login_anisette_server(self, invoke, service, account) -> None:
        service.start_login.return_value = account

        invoke([
            "account", "login", TEST_APPLE_ID,
            "--password", TEST_PASSWORD,
            "--anisette-server", "ani.example.com",
        ])

        service.start_login.assert_called_once_with(TEST_APPLE_ID, TEST_PASSWORD, "ani.example.com")

    def test_login_rejected(self, invoke, service) -> None:
        """Should exit non-zero on wrong credentials."""
        service.start_login.side_effect = InvalidCredentialsError()

        result = invoke(["account", "login", TEST_APPLE_ID, "--password", "wrong"])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_login_alias(self, invoke, service, account) -> None:
        service.start_login.return_value = account

        result = invoke(["login", TEST_APPLE_ID], input=f"{TEST_PASSWORD}\n")

        assert result.exit_code == 0
        service.start_login.assert_called_once_with(TEST_APPLE_ID, TEST_PASSWORD, None)


class TestAccountManagement:
    """Tests for listing, switching and removing accounts."""

    def test_list_empty(self, invoke, service) -> None:
        service.list_accounts.return_value = []
        service.active_account = None

        result = invoke(["account", "list"])

        assert result.exit_code == 0
        assert "No accounts" in result.output

    def test_list_json(self, invoke, service, account) -> None:
        service.list_accounts.return_value = [account]
        service.active_account = account

        result = invoke(["account", "list", "--json"])

        assert result.exit_code == 0
        assert f'"identifier": "{TEST_APPLE_ID}"' in result.output
        assert '"active": true' in result.output
        assert "sig-session-token" not in result.output

    def test_list_table(self, invoke, service, account) -> None:
        service.list_accounts.return_value = [account]
        service.active_account = account

        result = invoke(["account", "list"])

        assert result.exit_code == 0
        assert TEST_APPLE_ID in result.output
        assert "2024-01-02" in result.output

    def test_switch(self, invoke, service) -> None:
        result = invoke(["account", "switch", TEST_APPLE_ID])

        assert result.exit_code == 0
        service.switch_account.assert_called_once_with(TEST_APPLE_ID)

    def test_remove_confirmed(self, invoke, service) -> None:
        result = invoke(["account", "remove", TEST_APPLE_ID, "-y"])

        assert result.exit_code == 0
        service.remove_account.assert_called_once_with(TEST_APPLE_ID)

    def test_remove_cancelled(self, invoke, service) -> None:
        """Should keep the account when the prompt is declined."""
        result = invoke(["account", "remove", TEST_APPLE_ID], input="n\n")

        assert result.exit_code == 0
        assert "Cancelled" in result.output
        service.remove_account.assert_not_called()

    def test_verify(self, invoke, service, account) -> None:
        team = MagicMock()
        team.name, team.id, team.type = "Test Team", "ABCDE12345", "Individual"
        service.list_teams.return_value = [team]
        service.active_account = account

        result = invoke(["account", "verify"])

        assert result.exit_code == 0
        assert "Test Team" in result.output


class TestCertsCommands:
    def test_list(self, invoke, service) -> None:
        service.list_certificates.return_value = [
            Certificate("CERT1", "Apple Development", "1A2B3C", expiration=datetime(2025, 1, 1))
        ]

        result = invoke(["certs", "list"])

        assert result.exit_code == 0
        assert "1A2B3C" in result.output
        assert "1 certificate(s)" in result.output

    def test_list_empty(self, invoke, service) -> None:
        service.list_certificates.return_value = []

        result = invoke(["certs", "list"])

        assert "No development certificates" in result.output

    def test_revoke(self, invoke, service) -> None:
        result = invoke(["certs", "revoke", "1A2B3C", "--yes"])

        assert result.exit_code == 0
        service.revoke_certificate.assert_called_once_with("1A2B3C")


class TestAppIdsCommands:
    def test_list_shows_quota(self, invoke, service) -> None:
        """Should print the remaining App ID quota."""
        service.list_app_ids.return_value = AppIdList(
            [AppId("AID1", "com.example.test", "Test")], max_quantity=10, available_quantity=9
        )

        result = invoke(["appids", "list"])

        assert result.exit_code == 0
        assert "com.example.test" in result.output
        assert "9 of 10 App ID(s) available" in result.output

    def test_delete_disabled(self, invoke, service) -> None:
        service.delete_app_id.side_effect = DeletionDisabledError()

        result = invoke(["appids", "delete", "AID1", "-y"])

        assert result.exit_code == 1
        service.delete_app_id.assert_called_once_with("AID1")


class TestSignCommand:
    """Tests for 'iloader sign'."""

    def test_sign_with_account(self, invoke, service, test_ipa, tmp_path) -> None:
        signed = tmp_path / "Test-signed.ipa"
        service.sign.return_value = signed

        result = invoke(["sign", str(test_ipa), "--bundle-id", "com.example.mine"])

        assert result.exit_code == 0
        assert "Signed" in result.output
        kwargs = service.sign.call_args.kwargs
        assert kwargs["bundle_id"] == "com.example.mine"
        assert kwargs["output_path"] is None
        service.install.assert_not_called()

    def test_sign_and_install(self, invoke, service, test_ipa, tmp_path) -> None:
        signed = tmp_path / "Test-signed.ipa"
        service.sign.return_value = signed

        result = invoke(["sign", str(test_ipa), "--install", "--udid", "UDID-1"])

        assert result.exit_code == 0
        service.install.assert_called_once_with(signed, "UDID-1")

    def test_p12_needs_profile(self, invoke, service, test_ipa, tmp_path) -> None:
        """Should refuse --p12 without --profile."""
        p12 = tmp_path / "dev.p12"
        p12.write_bytes(b"p12")

        result = invoke(["sign", str(test_ipa), "--p12", str(p12)])

        assert result.exit_code == 2
        service.sign.assert_not_called()

    def test_offline_sign(self, invoke, service, test_ipa, tmp_path) -> None:
        """Should sign with the P12 and profile through the engine."""
        p12 = tmp_path / "dev.p12"
        p12.write_bytes(b"p12")
        profile = tmp_path / "dev.mobileprovision"
        profile.write_bytes(b"profile")
        output = tmp_path / "out.ipa"
        service.engine.sign.return_value = output

        result = invoke([
            "sign", str(test_ipa),
            "--p12", str(p12), "--p12-password", "secret",
            "--profile", str(profile), "-o", str(output),
        ])

        assert result.exit_code == 0
        args = service.engine.sign.call_args.args
        assert args[0] == test_ipa
        assert args[1] == output
        assert args[3] == b"profile"
        service.sign.assert_not_called()


def snapshot(state: OperationState, *steps: OperationStep, result: Path = None) -> OperationSnapshot:
    return OperationSnapshot("op1", OperationKind.INSTALL_SIDESTORE, TEST_APPLE_ID, state, steps, result)


class TestInstallCommand:
    """Tests for 'iloader install'."""

    def run_operation(self, invoke, service, final: OperationSnapshot, args):
        handle = MagicMock()
        handle.subscribe.side_effect = lambda listener: listener(final)
        handle.wait.return_value = final
        service.start_operation.return_value = handle
        return invoke(["install", *args])

    def test_sidestore(self, invoke, service, tmp_path) -> None:
        """Should print each finished step and the signed IPA."""
        final = snapshot(
            OperationState.COMPLETED,
            OperationStep("Downloading SideStore", StepState.COMPLETED),
            OperationStep("Installing Apps", StepState.COMPLETED),
            result=tmp_path / "SideStore.ipa",
        )

        result = self.run_operation(invoke, service, final, ["sidestore", "--udid", "UDID-1"])

        assert result.exit_code == 0
        assert "Downloading SideStore" in result.output
        assert "Operation completed" in result.output
        service.start_operation.assert_called_once_with(
            OperationKind.INSTALL_SIDESTORE,
            ipa_path=None,
            udid="UDID-1",
            bundle_id=None,
            certificate_id=None,
        )

    def test_failed_step(self, invoke, service) -> None:
        final = snapshot(
            OperationState.FAILED,
            OperationStep("Downloading SideStore", StepState.COMPLETED),
            OperationStep("Installing Apps", StepState.FAILED, "Device not found"),
        )

        result = self.run_operation(invoke, service, final, ["sidestore"])

        assert result.exit_code == 1
        assert "Device not found" in result.output
        assert "Failed at: Installing Apps" in result.output

    def test_sideload_needs_ipa(self, invoke, service) -> None:
        result = invoke(["install", "sideload"])

        assert result.exit_code == 2
        service.start_operation.assert_not_called()

    def test_custom_ipa(self, invoke, service, test_ipa) -> None:
        final = snapshot(OperationState.COMPLETED)

        result = self.run_operation(invoke, service, final, ["ipa", str(test_ipa)])

        assert result.exit_code == 0
        assert service.start_operation.call_args.args[0] == OperationKind.INSTALL_CUSTOM_IPA
        assert service.start_operation.call_args.kwargs["ipa_path"] == test_ipa


class TestDevicesCommand:
    def test_no_devices(self, invoke) -> None:
        """Should show message when no devices found."""
        with patch("iloader.cli.commands.install.list_devices", return_value=[]):
            result = invoke(["devices"])

        assert result.exit_code == 0
        assert "No devices found" in result.output

    def test_lists_devices(self, invoke) -> None:
        device = DeviceInfo("00008030-001234567890001E", "Test iPhone", "USB")
        with patch("iloader.cli.commands.install.list_devices", return_value=[device]):
            result = invoke(["devices"])

        assert result.exit_code == 0
        assert "Test iPhone" in result.output
