"""Load and provide tabserve configuration from tabserve.toml."""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[no-redef]
from pathlib import Path

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
]

# Apps that hold long-lived connections open and never reach network idle.
DEFAULT_HEAVY_HOSTS = [
    r"(^|\.)whatsapp\.com$",
    r"(^|\.)mail\.google\.com$",
    r"(^|\.)outlook\.(live|office|office365)\.com$",
    r"(^|\.)teams\.(microsoft|live)\.com$",
    r"(^|\.)slack\.com$",
    r"(^|\.)discord\.com$",
    r"(^|\.)telegram\.org$",
    r"(^|\.)messenger\.com$",
    r"(^|\.)chat\.google\.com$",
    r"(^|\.)meet\.google\.com$",
]


@dataclass
class Config:
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    headless: bool = True
    viewport_width: int = 1366
    viewport_height: int = 768
    user_agent: str = DEFAULT_USER_AGENT
    locale: str = "pt-BR"
    timezone: str = "America/Sao_Paulo"
    accept_language: str = "pt-BR,pt;q=0.9,en-US;q=0.8,en;q=0.7"
    launch_args: list[str] = field(default_factory=lambda: list(DEFAULT_LAUNCH_ARGS))
    launch_timeout: float = 30.0  # seconds; bounds session creation
    jpeg_quality: int = 80
    block_resource_types: list[str] = field(default_factory=lambda: ["font", "media"])

    session_ttl: float = 600.0  # seconds idle before a session is reaped
    default_session_id: str = "default"
    require_session_id: bool = False

    navigation_timeout_ms: int = 30_000
    history_timeout_ms: int = 15_000
    fallback_delay_ms: int = 500
    probe_timeout: float = 5.0
    click_settle_ms: int = 1500
    key_settle_ms: int = 1000
    history_settle_ms: int = 1000
    input_pause_ms: int = 300
    oneshot_delay_ms: int = 2000

    heavy_hosts: list[str] = field(default_factory=lambda: list(DEFAULT_HEAVY_HOSTS))
    heavy_settle_ms: int = 3000
    standard_settle_ms: int = 1500

    @property
    def viewport(self) -> dict:
        return {"width": self.viewport_width, "height": self.viewport_height}


def load(project_root: Path | None = None) -> Config:
    """Load config from tabserve.toml; all fields have defaults."""
    if project_root is None:
        project_root = Path.cwd()

    toml_path = project_root / "tabserve.toml"
    data: dict = {}
    if toml_path.exists():
        with open(toml_path, "rb") as f:
            data = tomllib.load(f)

    server = data.get("server", {})
    browser = data.get("browser", {})
    sessions = data.get("sessions", {})
    timing = data.get("timing", {})
    policy = data.get("policy", {})
    defaults = Config()

    # PORT from the environment takes precedence over the TOML value so the
    # service can be placed behind a platform-assigned port.
    port = int(os.environ.get("PORT") or server.get("port", defaults.port))

    return Config(
        host=server.get("host", defaults.host),
        port=port,
        log_level=server.get("log_level", defaults.log_level).upper(),
        headless=browser.get("headless", defaults.headless),
        viewport_width=browser.get("viewport_width", defaults.viewport_width),
        viewport_height=browser.get("viewport_height", defaults.viewport_height),
        user_agent=browser.get("user_agent", defaults.user_agent),
        locale=browser.get("locale", defaults.locale),
        timezone=browser.get("timezone", defaults.timezone),
        accept_language=browser.get("accept_language", defaults.accept_language),
        launch_args=list(browser.get("launch_args", defaults.launch_args)),
        launch_timeout=browser.get("launch_timeout", defaults.launch_timeout),
        jpeg_quality=browser.get("jpeg_quality", defaults.jpeg_quality),
        block_resource_types=list(
            browser.get("block_resource_types", defaults.block_resource_types)
        ),
        session_ttl=sessions.get("ttl", defaults.session_ttl),
        default_session_id=sessions.get("default_id", defaults.default_session_id),
        require_session_id=sessions.get("require_session_id", defaults.require_session_id),
        navigation_timeout_ms=timing.get("navigation_timeout_ms", defaults.navigation_timeout_ms),
        history_timeout_ms=timing.get("history_timeout_ms", defaults.history_timeout_ms),
        fallback_delay_ms=timing.get("fallback_delay_ms", defaults.fallback_delay_ms),
        probe_timeout=timing.get("probe_timeout", defaults.probe_timeout),
        click_settle_ms=timing.get("click_settle_ms", defaults.click_settle_ms),
        key_settle_ms=timing.get("key_settle_ms", defaults.key_settle_ms),
        history_settle_ms=timing.get("history_settle_ms", defaults.history_settle_ms),
        input_pause_ms=timing.get("input_pause_ms", defaults.input_pause_ms),
        oneshot_delay_ms=timing.get("oneshot_delay_ms", defaults.oneshot_delay_ms),
        heavy_hosts=list(policy.get("heavy_hosts", defaults.heavy_hosts)),
        heavy_settle_ms=policy.get("heavy_settle_ms", defaults.heavy_settle_ms),
        standard_settle_ms=policy.get("standard_settle_ms", defaults.standard_settle_ms),
    )
