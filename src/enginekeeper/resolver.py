"""Decide which engine executable to launch, keeping the cached build current.

Resolution order:

1. An explicit ``server_path`` override always wins and suppresses all
   network activity.
2. Otherwise the per-platform cached build is used. If it is already
   executable the engine may start right away while a background check stages
   any newer build for the next start.
3. With nothing cached the update channel is queried in the foreground.

Every failure ends in the browse prompt, which lets the user pick an
executable by hand, or in a :class:`Resolution` carrying a readable reason.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from . import __version__
from .integrity import try_file_digest
from .platform_key import PlatformKey, detect_platform_key
from .prompts import Prompter
from .replacer import ReplaceFailed, is_executable, promote, staged_path_for
from .settings import (
    SERVER_PATH_KEY,
    AutoUpdatePreference,
    SettingsStore,
    auto_update_preference,
    default_cache_dir,
    server_path_override,
    set_auto_update_preference,
    update_url,
)
from .update_channel import (
    ChannelRemoved,
    Unmodified,
    UpdateChannelClient,
    UpdateOutcome,
    Updated,
)

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_NAME = "dm-langserver"
DEFAULT_SETTLE_DELAY = 0.5

BROWSE = "Browse"
CANCEL = "Cancel"
YES = "Yes"
JUST_ONCE = "Just Once"
NO = "No"


class ResolverState(enum.Enum):
    CONFIGURED_OVERRIDE = "configured_override"
    AUTO_DETECT_WARM = "auto_detect_warm"
    AUTO_DETECT_COLD = "auto_detect_cold"
    FAILED = "failed"


@dataclass(frozen=True)
class ServerCommand:
    """Launch descriptor for the engine process."""

    path: str
    args: tuple[str, ...] = ()

    @property
    def argv(self) -> list[str]:
        return [self.path, *self.args]


@dataclass(frozen=True)
class CachedBinary:
    """Cached engine build and its staging slot, derived from the filesystem."""

    primary_path: Path

    @classmethod
    def locate(
        cls, cache_dir: str | Path, platform_key: PlatformKey, engine_name: str
    ) -> CachedBinary:
        return cls(Path(cache_dir) / platform_key.binary_name(engine_name))

    @property
    def staged_path(self) -> Path:
        return staged_path_for(self.primary_path)

    @property
    def is_ready(self) -> bool:
        return is_executable(self.primary_path)

    @property
    def has_pending_update(self) -> bool:
        return is_executable(self.staged_path)

    def content_hash(self) -> str | None:
        if not self.primary_path.exists():
            return None
        return try_file_digest(self.primary_path)


class ResolverSession:
    """State that outlives a single resolution within one client session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._command: ServerCommand | None = None
        self._update_available = False
        self._auto_update_answer: bool | None = None
        self._last_outcome: UpdateOutcome | None = None
        self._update_listeners: list[Callable[[], None]] = []

    @property
    def command(self) -> ServerCommand | None:
        with self._lock:
            return self._command

    @command.setter
    def command(self, value: ServerCommand | None) -> None:
        with self._lock:
            self._command = value

    @property
    def update_available(self) -> bool:
        """Sticky: a newer build is staged and applies on the next start."""
        with self._lock:
            return self._update_available

    def mark_update_available(self) -> None:
        with self._lock:
            if self._update_available:
                return
            self._update_available = True
            listeners = list(self._update_listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Update listener %r failed", listener)

    def add_update_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Call ``callback`` once the update flag flips on."""
        with self._lock:
            self._update_listeners.append(callback)

        def remove() -> None:
            with self._lock:
                if callback in self._update_listeners:
                    self._update_listeners.remove(callback)

        return remove

    @property
    def auto_update_answer(self) -> bool | None:
        with self._lock:
            return self._auto_update_answer

    def remember_auto_update_answer(self, enabled: bool) -> None:
        with self._lock:
            self._auto_update_answer = enabled

    @property
    def last_outcome(self) -> UpdateOutcome | None:
        with self._lock:
            return self._last_outcome

    def record_outcome(self, outcome: UpdateOutcome) -> None:
        with self._lock:
            self._last_outcome = outcome


@dataclass
class Resolution:
    """Result of one resolution attempt."""

    command: ServerCommand | None
    state: ResolverState
    reason: str | None = None
    background: threading.Thread | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.command is not None

    def wait(self, timeout: float | None = None) -> None:
        """Block until the background update check (if any) finishes."""
        if self.background is not None:
            self.background.join(timeout)


class CommandResolver:
    """Resolve the engine command for this session."""

    def __init__(
        self,
        settings: SettingsStore,
        prompter: Prompter,
        *,
        session: ResolverSession | None = None,
        channel: UpdateChannelClient | None = None,
        platform_key: PlatformKey | None = None,
        cache_dir: str | Path | None = None,
        engine_name: str = DEFAULT_ENGINE_NAME,
        version: str = __version__,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        replacer: Callable[[Path, Path], object] = promote,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._prompter = prompter
        self.session = session or ResolverSession()
        self._channel = channel
        self._owns_channel = channel is None
        self._platform_key = platform_key
        self._cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.engine_name = engine_name
        self._version = version
        self._settle_delay = settle_delay
        self._replacer = replacer
        self._sleep = sleep
        self._prompt_lock = threading.Lock()

    @property
    def platform_key(self) -> PlatformKey:
        if self._platform_key is None:
            self._platform_key = detect_platform_key()
        return self._platform_key

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir if self._cache_dir is not None else default_cache_dir()

    @property
    def channel(self) -> UpdateChannelClient:
        if self._channel is None:
            self._channel = UpdateChannelClient(update_url(self._settings))
        return self._channel

    def close(self) -> None:
        if self._owns_channel and self._channel is not None:
            self._channel.close()
            self._channel = None

    def cached_binary(self) -> CachedBinary:
        return CachedBinary.locate(self.cache_dir, self.platform_key, self.engine_name)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self) -> Resolution:
        """Run the resolution state machine once.

        A path chosen in the browse prompt is persisted as the override and
        resolution restarts from the top.
        """
        while True:
            override = server_path_override(self._settings)
            if override:
                resolution, message = self._resolve_override(override)
            else:
                resolution, message = self._resolve_auto()
            if resolution is not None:
                return resolution

            logger.info("Engine resolution needs user input: %s", message)
            if not self._browse_for_override(message):
                return Resolution(command=None, state=ResolverState.FAILED, reason=message)

    def _emit(
        self,
        command: ServerCommand,
        state: ResolverState,
        background: threading.Thread | None = None,
    ) -> Resolution:
        self.session.command = command
        logger.info("Resolved engine command %s (%s)", command.path, state.value)
        return Resolution(command=command, state=state, background=background)

    def _promote(self, primary: Path) -> str | None:
        """Promote a staged build; return a failure message instead of raising."""
        try:
            self._replacer(staged_path_for(primary), primary)
        except ReplaceFailed as exc:
            return f"Failed to apply the pending update: {exc}"
        except OSError as exc:
            return f"Failed to inspect {primary}: {exc}"
        return None

    def _resolve_override(self, override: str) -> tuple[Resolution | None, str]:
        primary = Path(override)
        failure = self._promote(primary)
        if failure is not None:
            return None, failure
        if is_executable(primary):
            return self._emit(ServerCommand(override), ResolverState.CONFIGURED_OVERRIDE), ""
        return None, "Configured executable is missing or invalid."

    def _resolve_auto(self) -> tuple[Resolution | None, str]:
        cached = self.cached_binary()
        failure = self._promote(cached.primary_path)
        if failure is not None:
            return None, failure

        if cached.is_ready:
            command = ServerCommand(str(cached.primary_path))
            background = None
            if self._may_auto_update():
                # The preference prompt, if any, runs off the launch path.
                background = self._start_background_update(cached)
            return self._emit(command, ResolverState.AUTO_DETECT_WARM, background), ""

        if not self._auto_update_enabled():
            return None, "No executable configured and auto-update disabled."

        outcome = self._fetch(cached, current_hash=None)
        if not isinstance(outcome, Updated):
            return None, f"Auto-update failed: {outcome.describe()}"

        # Some platforms report a just-closed handle as busy for a moment.
        self._sleep(self._settle_delay)
        failure = self._promote(cached.primary_path)
        if failure is not None:
            return None, failure
        if not cached.is_ready:
            return None, f"Downloaded build {cached.primary_path} is not executable."
        return self._emit(
            ServerCommand(str(cached.primary_path)), ResolverState.AUTO_DETECT_COLD
        ), ""

    def _browse_for_override(self, message: str) -> bool:
        choice = self._prompter.ask(
            f"The {self.engine_name} executable must be selected. {message}",
            [BROWSE, CANCEL],
        )
        if choice != BROWSE:
            return False
        selected = self._prompter.browse(f"Select the {self.engine_name} executable")
        if not selected:
            return False
        self._settings.set(SERVER_PATH_KEY, selected)
        logger.info("Stored %s override %s", self.engine_name, selected)
        return True

    # ------------------------------------------------------------------
    # Auto-update
    # ------------------------------------------------------------------

    def _may_auto_update(self) -> bool:
        """False only when auto-update is already known to be off."""
        preference = auto_update_preference(self._settings)
        if preference is AutoUpdatePreference.UNSET:
            return self.session.auto_update_answer is not False
        return preference is AutoUpdatePreference.ENABLED

    def _auto_update_enabled(self) -> bool:
        with self._prompt_lock:
            return self._ask_auto_update()

    def _ask_auto_update(self) -> bool:
        preference = auto_update_preference(self._settings)
        if preference is AutoUpdatePreference.ENABLED:
            return True
        if preference is AutoUpdatePreference.DISABLED:
            return False

        answered = self.session.auto_update_answer
        if answered is not None:
            return answered

        choice = self._prompter.ask(
            f"Auto-updates are available for {self.engine_name}. "
            "Would you like to enable them?",
            [YES, JUST_ONCE, NO],
        )
        if choice == YES:
            set_auto_update_preference(self._settings, AutoUpdatePreference.ENABLED)
            enabled = True
        elif choice == NO:
            set_auto_update_preference(self._settings, AutoUpdatePreference.DISABLED)
            enabled = False
        else:
            enabled = choice == JUST_ONCE
        self.session.remember_auto_update_answer(enabled)
        return enabled

    def _fetch(self, cached: CachedBinary, current_hash: str | None) -> UpdateOutcome:
        outcome = self.channel.check_and_fetch(
            self.platform_key, self._version, current_hash, cached.staged_path
        )
        self.session.record_outcome(outcome)
        if isinstance(outcome, ChannelRemoved):
            logger.warning("%s; disabling auto-update", outcome.describe())
            set_auto_update_preference(self._settings, AutoUpdatePreference.DISABLED)
        return outcome

    def _start_background_update(self, cached: CachedBinary) -> threading.Thread:
        thread = threading.Thread(
            target=self._background_update,
            args=(cached,),
            name="enginekeeper-update",
            daemon=True,
        )
        thread.start()
        return thread

    def _background_update(self, cached: CachedBinary) -> None:
        try:
            if not self._auto_update_enabled():
                return
            current_hash = cached.content_hash()
            if current_hash is None:
                logger.warning("Skipping update check: %s is unreadable", cached.primary_path)
                return
            outcome = self._fetch(cached, current_hash)
            if isinstance(outcome, Updated):
                self.session.mark_update_available()
                logger.info("Update for %s staged; restart to apply", self.engine_name)
            elif not isinstance(outcome, Unmodified):
                logger.info("Background update check: %s", outcome.describe())
        except Exception:
            logger.exception("Background update check failed")
