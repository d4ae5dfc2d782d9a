"""
Command surface of iloader.

IloaderService builds every component once from a Config and wires them
together. Front-ends (the CLI, tests) talk only to this class. Calls that
touch an account's certificates, App IDs or profiles are serialised per
account.
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Any, Optional, Union

import requests

from iloader.config import Config
from iloader.constants import DEFAULT_ACCOUNTS_FILE, DEFAULT_MACHINE_NAME
from iloader.core.accounts import Account, AccountStore, KeyringVault, SecretVault
from iloader.core.anisette import AnisetteProvider
from iloader.core.auth import GSAClient, SessionHandle, SRPAuthenticator, TwoFactorRequired
from iloader.core.developer import (
    AppId,
    AppIdList,
    Certificate,
    DeveloperServicesClient,
    ServiceContext,
    Team,
)
from iloader.core.device import InstallerFactory, MobileDeviceInstaller
from iloader.core.operations import (
    OperationContext,
    OperationHandle,
    OperationKind,
    OperationOrchestrator,
    StepDefinition,
    download_file,
)
from iloader.core.signing import (
    AppleIdIdentitySource,
    SigningEngine,
    read_ipa_info,
    verify_ipa,
)
from iloader.core.signing.engine import ProgressCallback
from iloader.exceptions import (
    ApiError,
    DeletionDisabledError,
    ExtractionFailedError,
    NotSignedInError,
    SealVerificationError,
)

logger = logging.getLogger(__name__)

_APP_ID_NAME_RE = re.compile(r"[^A-Za-z0-9 ]")


def _app_name(info: dict[str, Any], fallback: str) -> str:
    for key in ("CFBundleDisplayName", "CFBundleName"):
        value = info.get(key)
        if isinstance(value, str) and value:
            return value
    return fallback


class IloaderService:
    """
    Entry point for logins, developer-account management and signing.

    Example:
        service = IloaderService.create(Config.load())
        result = service.start_login("user@example.com", password)
        if isinstance(result, TwoFactorRequired):
            service.complete_two_factor(result.handle, input("Code: "))
        service.sign_and_install(Path("App.ipa"))
    """

    def __init__(
        self,
        config: Config,
        anisette: AnisetteProvider,
        authenticator: SRPAuthenticator,
        store: AccountStore,
        developer: DeveloperServicesClient,
        engine: SigningEngine,
        orchestrator: OperationOrchestrator,
        installer_factory: InstallerFactory,
        http: Optional[requests.Session] = None,
    ):
        self.config = config
        self.anisette = anisette
        self.authenticator = authenticator
        self.store = store
        self.developer = developer
        self.engine = engine
        self.orchestrator = orchestrator
        self._installer_factory = installer_factory
        self._http = http or requests.Session()
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._teams: dict[str, str] = {}

    @classmethod
    def create(
        cls,
        config: Optional[Config] = None,
        vault: Optional[SecretVault] = None,
        installer_factory: Optional[InstallerFactory] = None,
        http: Optional[requests.Session] = None,
    ) -> IloaderService:
        """
        Build all components from configuration.

        Args:
            config: Configuration. Loaded from the default location if None.
            vault: Secret storage. Uses the OS keyring if None.
            installer_factory: Builds a device installer for a UDID.
            http: Shared HTTP session.
        """
        config = config or Config.load()
        http = http or requests.Session()

        anisette = AnisetteProvider(
            session=http,
            timeout=config.anisette.timeout,
            cache_ttl=config.anisette.cache_ttl,
        )
        gsa = GSAClient(
            session=http,
            url=config.apple.gsa_url,
            timeout=config.apple.timeout,
            user_agent=config.apple.user_agent,
            locale=config.apple.locale,
        )
        developer = DeveloperServicesClient(
            anisette,
            session=http,
            base_url=config.apple.developer_services_url,
            client_id=config.apple.client_id,
            protocol_version=config.apple.protocol_version,
            timeout=config.apple.developer_timeout,
            locale=config.apple.locale,
        )
        store = AccountStore(config.config_dir / DEFAULT_ACCOUNTS_FILE, vault or KeyringVault())

        return cls(
            config=config,
            anisette=anisette,
            authenticator=SRPAuthenticator(anisette, gsa),
            store=store,
            developer=developer,
            engine=SigningEngine(config.work_dir),
            orchestrator=OperationOrchestrator(config.work_dir),
            installer_factory=installer_factory or MobileDeviceInstaller,
            http=http,
        )

    def _account_lock(self, identifier: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(identifier)
            if lock is None:
                lock = self._locks[identifier] = threading.RLock()
            return lock

    # Accounts

    def start_login(
        self,
        identifier: str,
        secret: str,
        anisette_server: Optional[str] = None,
    ) -> Union[Account, TwoFactorRequired]:
        """
        Sign in with an Apple ID.

        Returns:
            The stored Account, or TwoFactorRequired when a one-time code
            must be passed to complete_two_factor.

        Raises:
            InvalidCredentialsError: If Apple rejects the password.
            SessionInProgressError: If a sign-in for the same Apple ID is
                already pending.
        """
        handle = self.authenticator.begin(
            identifier, secret, anisette_server or self.config.anisette.server
        )
        if handle.requires_second_factor:
            logger.info(f"Two-factor code required for {identifier}")
            return TwoFactorRequired(handle)
        return self.store.add(identifier, handle.token)

    def complete_two_factor(
        self,
        handle: Union[SessionHandle, TwoFactorRequired],
        code: str,
    ) -> Account:
        """Submit the one-time code and store the account."""
        if isinstance(handle, TwoFactorRequired):
            handle = handle.handle
        token = self.authenticator.complete_second_factor(handle, code)
        return self.store.add(handle.identifier, token)

    def cancel_login(self, handle: Union[SessionHandle, TwoFactorRequired]) -> None:
        if isinstance(handle, TwoFactorRequired):
            handle = handle.handle
        self.authenticator.cancel(handle)

    def list_accounts(self) -> list[Account]:
        return self.store.list()

    @property
    def active_account(self) -> Optional[Account]:
        return self.store.active

    def switch_account(self, identifier: str) -> Account:
        return self.store.switch(identifier)

    def remove_account(self, identifier: str) -> None:
        """Forget an account, its session token and its signing keys."""
        with self._account_lock(identifier):
            self._teams.pop(identifier, None)
            self.store.remove(identifier)

    # Developer services

    def _context(self, team_id: Optional[str] = None) -> ServiceContext:
        account = self.store.active
        if account is None:
            raise NotSignedInError()
        return self._context_for(account, team_id)

    def _context_for(self, account: Account, team_id: Optional[str] = None) -> ServiceContext:
        context = ServiceContext(account, self.config.anisette.server)
        return ServiceContext(
            account,
            self.config.anisette.server,
            team_id or self._team_for(context),
        )

    def _team_for(self, context: ServiceContext) -> str:
        identifier = context.account.identifier
        team_id = self._teams.get(identifier)
        if team_id is None:
            teams = self.developer.list_teams(context)
            if not teams:
                raise ApiError(0, "No development team for this account")
            team_id = self._teams[identifier] = teams[0].id
            logger.debug(f"Using team {team_id} for {identifier}")
        return team_id

    def list_teams(self) -> list[Team]:
        account = self.store.active
        if account is None:
            raise NotSignedInError()
        return self.developer.list_teams(ServiceContext(account, self.config.anisette.server))

    def list_certificates(self, team_id: Optional[str] = None) -> list[Certificate]:
        context = self._context(team_id)
        with self._account_lock(context.account.identifier):
            return self.developer.list_certificates(context)

    def revoke_certificate(self, serial_number: str, team_id: Optional[str] = None) -> None:
        context = self._context(team_id)
        with self._account_lock(context.account.identifier):
            self.developer.revoke_certificate(context, serial_number)
        logger.info(f"Revoked certificate {serial_number}")

    def list_app_ids(self, team_id: Optional[str] = None) -> AppIdList:
        context = self._context(team_id)
        with self._account_lock(context.account.identifier):
            return self.developer.list_app_ids(context)

    def delete_app_id(self, app_id_id: str, team_id: Optional[str] = None) -> None:
        """
        Delete an App ID.

        Raises:
            DeletionDisabledError: If App ID deletion is turned off.
        """
        if not self.config.policy.allow_app_id_deletion:
            raise DeletionDisabledError("App ID")
        context = self._context(team_id)
        with self._account_lock(context.account.identifier):
            self.developer.delete_app_id(context, app_id_id)
        logger.info(f"Deleted App ID {app_id_id}")

    # Signing

    def _identity_source(
        self,
        context: ServiceContext,
        certificate_id: Optional[str],
    ) -> AppleIdIdentitySource:
        return AppleIdIdentitySource(
            self.developer,
            self.store,
            context,
            certificate_id=certificate_id,
            machine_name=DEFAULT_MACHINE_NAME,
        )

    def _target_bundle_id(self, info: dict[str, Any], bundle_id: Optional[str], team_id: str) -> str:
        if bundle_id:
            return bundle_id
        original = info.get("CFBundleIdentifier")
        if not isinstance(original, str) or not original:
            raise ExtractionFailedError("app has no bundle identifier")
        # Free teams cannot register another team's identifier
        if original.endswith(f".{team_id}"):
            return original
        return f"{original}.{team_id}"

    def _ensure_app_id(self, context: ServiceContext, identifier: str, name: str) -> AppId:
        listing = self.developer.list_app_ids(context)
        for app_id in listing.app_ids:
            if app_id.identifier == identifier:
                return app_id

        if listing.available_quantity is not None and listing.available_quantity <= 0:
            raise ApiError(0, "No App IDs left; delete one or wait for one to expire")

        clean_name = _APP_ID_NAME_RE.sub("", name).strip() or "iloader App"
        logger.info(f"Registering App ID {identifier}")
        return self.developer.create_app_id(context, identifier, clean_name)

    def _ensure_device(self, context: ServiceContext, udid: str) -> None:
        for device in self.developer.list_devices(context):
            if device.udid.upper() == udid.upper():
                return
        logger.info(f"Registering device {udid}")
        self.developer.register_device(context, udid, udid)

    def _sign_for_account(
        self,
        context: ServiceContext,
        ipa_path: Path,
        identity_source: AppleIdIdentitySource,
        output_path: Optional[Path],
        bundle_id: Optional[str],
        certificate_id: Optional[str],
        udid: Optional[str],
        progress: Optional[ProgressCallback],
        cancel_event: Optional[threading.Event],
    ) -> Path:
        info = read_ipa_info(ipa_path)
        target = self._target_bundle_id(info, bundle_id, context.team_id or "")

        with self._account_lock(context.account.identifier):
            identity_source.resolve()
            if udid:
                self._ensure_device(context, udid)
            app_id = self._ensure_app_id(context, target, _app_name(info, ipa_path.stem))
            profile = self.developer.download_provisioning_profile(
                context, app_id.id, certificate_id
            )

            output = output_path or self.config.output_dir / f"{ipa_path.stem}-signed.ipa"
            return self.engine.sign(
                ipa_path,
                output,
                identity_source,
                profile.data,
                bundle_id=target,
                progress=progress,
                cancel_event=cancel_event,
            )

    def sign(
        self,
        ipa_path: Path,
        output_path: Optional[Path] = None,
        bundle_id: Optional[str] = None,
        certificate_id: Optional[str] = None,
        udid: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """
        Sign an IPA with the active account.

        The App ID is registered if needed, the device (when given) is
        added to the team, and a fresh team provisioning profile is
        fetched for every run.

        Args:
            ipa_path: Source IPA.
            output_path: Where to write the result. Defaults to the
                configured output directory.
            bundle_id: Target bundle identifier. Defaults to the app's
                identifier suffixed with the team id.
            certificate_id: Certificate id or serial to sign with.
            udid: Device to provision for.
            progress: Signing progress callback.
            cancel_event: Cancels between signing stages.

        Returns:
            Path of the signed IPA.
        """
        context = self._context()
        ipa_path = Path(ipa_path)
        return self._sign_for_account(
            context,
            ipa_path,
            self._identity_source(context, certificate_id),
            Path(output_path) if output_path else None,
            bundle_id,
            certificate_id,
            udid,
            progress,
            cancel_event,
        )

    def install(self, ipa_path: Path, udid: Optional[str] = None) -> None:
        """Install a signed IPA on a device."""
        installer = self._installer_factory(udid)
        try:
            installer.install(Path(ipa_path), udid=udid)
        finally:
            installer.close()

    def sign_and_install(
        self,
        ipa_path: Path,
        bundle_id: Optional[str] = None,
        certificate_id: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
        udid: Optional[str] = None,
        output_path: Optional[Path] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """Sign an IPA and install it. Returns the signed IPA's path."""
        signed = self.sign(
            ipa_path,
            output_path=output_path,
            bundle_id=bundle_id,
            certificate_id=certificate_id,
            udid=udid,
            progress=progress_callback,
            cancel_event=cancel_event,
        )
        self.install(signed, udid)
        return signed

    # Operations

    def start_operation(
        self,
        kind: Union[OperationKind, str],
        ipa_path: Optional[Path] = None,
        udid: Optional[str] = None,
        bundle_id: Optional[str] = None,
        certificate_id: Optional[str] = None,
    ) -> OperationHandle:
        """
        Start a named operation on a worker thread.

        Raises:
            NotSignedInError: If no account is active.
            OperationInProgressError: If the account already runs one.
            ValueError: If the operation needs an IPA and none is given.
        """
        kind = OperationKind(kind)
        if kind.needs_ipa and ipa_path is None:
            raise ValueError(f"{kind.value} needs an IPA")

        account = self.store.active
        if account is None:
            raise NotSignedInError()

        initial = {"ipa": Path(ipa_path)} if ipa_path is not None else {}
        steps = self._steps(kind, initial.get("ipa"), udid, bundle_id, certificate_id)
        return self.orchestrator.start(account.identifier, kind, steps, initial)

    def _steps(
        self,
        kind: OperationKind,
        ipa_path: Optional[Path],
        udid: Optional[str],
        bundle_id: Optional[str],
        certificate_id: Optional[str],
    ) -> list[StepDefinition]:
        def download(name: str, url: str):
            def action(ctx: OperationContext) -> None:
                ctx.artifacts["ipa"] = download_file(
                    url,
                    ctx.scratch_dir / f"{name}.ipa",
                    session=self._http,
                    timeout=self.config.releases.timeout,
                )
            return action

        def check_ipa(ctx: OperationContext) -> None:
            ctx.artifacts["info"] = read_ipa_info(ctx.artifacts["ipa"])

        def verify_certificate(ctx: OperationContext) -> None:
            # bound to the account the operation started for, not the active one
            with self._account_lock(ctx.account):
                context = self._context_for(self.store.get(ctx.account))
                source = self._identity_source(context, certificate_id)
                source.resolve()
            ctx.artifacts["context"] = context
            ctx.artifacts["identity"] = source

        def sign(ctx: OperationContext) -> None:
            ctx.artifacts["result"] = self._sign_for_account(
                ctx.artifacts["context"],
                ctx.artifacts["ipa"],
                ctx.artifacts["identity"],
                None,
                bundle_id,
                certificate_id,
                udid,
                None,
                ctx.cancel_event,
            )

        def verify_signature(ctx: OperationContext) -> None:
            mismatches = verify_ipa(ctx.artifacts["result"], self.config.work_dir)
            if mismatches:
                raise SealVerificationError(mismatches)

        def install(ctx: OperationContext) -> None:
            self.install(ctx.artifacts["result"], udid)

        if kind == OperationKind.INSTALL_SIDESTORE:
            return [
                StepDefinition(
                    "Downloading SideStore",
                    download("SideStore", self.config.releases.sidestore_url),
                ),
                StepDefinition("Verifying Certificate", verify_certificate),
                StepDefinition("Signing Apps", sign),
                StepDefinition("Installing Apps", install),
            ]
        if kind == OperationKind.INSTALL_LIVECONTAINER:
            return [
                StepDefinition(
                    "Downloading LiveContainer",
                    download("LiveContainer", self.config.releases.livecontainer_url),
                ),
                StepDefinition("Verifying Certificate", verify_certificate),
                StepDefinition("Signing Apps", sign),
                StepDefinition("Installing Apps", install),
            ]
        if kind == OperationKind.CUSTOM_SIDELOAD:
            return [
                StepDefinition("Verifying Certificate", verify_certificate),
                StepDefinition("Signing Apps", sign),
                StepDefinition("Installing Apps", install),
            ]
        return [
            StepDefinition("Verifying IPA Integrity", check_ipa),
            StepDefinition("Verifying Certificate", verify_certificate),
            StepDefinition(f"Signing {ipa_path.name}", sign),
            StepDefinition("Verifying Signature", verify_signature),
            StepDefinition("Installing", install),
        ]
