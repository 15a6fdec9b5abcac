#!/usr/bin/env python3
"""
Dev Account Setup Script
------------------------

Sets up a developer account on a shared web development host.

Creates:
  • A local login (SSH) with a home directory and bash shell
  • FTP access to the home directory (implicit with the login)
  • MySQL access to username_* databases, plus a ~/.my.cnf file
  • A self-signed SSL key/certificate in ~/.ssl[/certs]
  • An Apache site config file (enabled, with graceful reload)

Assumes:
  • A valid /root/.my.cnf file so the mysql client can create users
  • A wildcard DNS entry for the configured server domain
  • chroot'd FTP access for user accounts by default
  • Apache2 correctly configured and running

Each step is run once and its outcome is logged, but a failing step does not
stop the ones after it and nothing is rolled back.

Usage:
  sudo ./createdevuser.py username password
"""

import argparse
import json
import logging
import os
import pwd
import re
import shutil
import signal
import subprocess
import sys
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import pyfiglet
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.text import Text
from rich.traceback import install as install_rich_traceback

install_rich_traceback(show_locals=False)
console: Console = Console()

# Configuration and Constants
APP_NAME: str = "Dev User Setup"
VERSION: str = "1.0.0"
LOGGER_NAME: str = "createdevuser"
DEFAULT_CONFIG_FILE: str = "/etc/createdevuser.json"
DEFAULT_LOG_FILE: str = "/var/log/createdevuser.log"
USAGE: str = "createdevuser username password"

EXIT_SUCCESS: int = 0
EXIT_NOT_ROOT: int = 1
EXIT_BAD_ARGUMENTS: int = 2
EXIT_USER_EXISTS: int = 3
EXIT_CANCELLED: int = 4
EXIT_CONFIG_ERROR: int = 5

# useradd's default NAME_REGEX, limited to 32 characters
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

logger = logging.getLogger(LOGGER_NAME)


class NordColors:
    SNOW_STORM_2: str = "#E5E9F0"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[:steps]


class ConfigError(Exception):
    """Raised when the configuration file cannot be used."""


@dataclass
class DevUserConfig:
    server_domain: str = "domain.com"
    ssl_country: str = "GB"
    ssl_state: str = "London"
    ssl_location: str = "London"
    ssl_organisation: str = "Organisation"
    ssl_days: int = 1825
    ssl_key_bits: int = 2048
    mysql_defaults_file: str = "/root/.my.cnf"
    home_root: str = "/home"
    apache_sites_dir: str = "/etc/apache2/sites-available"
    login_shell: str = "/bin/bash"
    password_scheme: str = "1"
    log_file: str = DEFAULT_LOG_FILE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DevAccount:
    """
    Names and paths for one dev account.

    Every value is derived from the username and the host configuration, so
    two accounts built from the same inputs are always equal.
    """

    username: str
    domain: str
    home_root: Path
    sites_dir: Path

    @classmethod
    def from_config(cls, username: str, config: DevUserConfig) -> "DevAccount":
        return cls(
            username=username,
            domain=config.server_domain,
            home_root=Path(config.home_root),
            sites_dir=Path(config.apache_sites_dir),
        )

    @property
    def site_name(self) -> str:
        return f"{self.username}.{self.domain}"

    @property
    def server_admin(self) -> str:
        return f"{self.username}@{self.domain}"

    @property
    def home_dir(self) -> Path:
        return self.home_root / self.username

    @property
    def public_html(self) -> Path:
        return self.home_dir / "public_html"

    @property
    def mysql_cnf(self) -> Path:
        return self.home_dir / ".my.cnf"

    @property
    def ssl_dir(self) -> Path:
        return self.home_dir / ".ssl"

    @property
    def ssl_certs_dir(self) -> Path:
        return self.ssl_dir / "certs"

    @property
    def key_file(self) -> Path:
        return self.ssl_dir / f"{self.site_name}.key"

    @property
    def cert_file(self) -> Path:
        return self.ssl_certs_dir / f"{self.site_name}.crt"

    @property
    def site_config_file(self) -> Path:
        return self.sites_dir / f"{self.site_name}.conf"

    @property
    def database_pattern(self) -> str:
        return f"{self.username}_%"

    @property
    def owner(self) -> str:
        return f"{self.username}:{self.username}"

    def ssl_subject(self, config: DevUserConfig) -> str:
        return (
            f"/C={config.ssl_country}/ST={config.ssl_state}"
            f"/L={config.ssl_location}/O={config.ssl_organisation}"
            f"/CN={self.site_name}"
        )


# ----------------------------------------------------------------
# UI Helper Functions
# ----------------------------------------------------------------
def create_header() -> Panel:
    term_width, _ = shutil.get_terminal_size((80, 24))
    font_to_use = "slant" if term_width >= 60 else "small"
    try:
        fig = pyfiglet.Figlet(font=font_to_use, width=min(term_width - 10, 120))
        ascii_art = fig.renderText(APP_NAME)
    except pyfiglet.FigletError:
        ascii_art = f"  {APP_NAME}  "
    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()]
    colors = NordColors.get_frost_gradient(len(ascii_lines))
    combined_text = Text()
    for i, line in enumerate(ascii_lines):
        color = colors[i % len(colors)]
        combined_text.append(Text(line, style=f"bold {color}"))
        if i < len(ascii_lines) - 1:
            combined_text.append("\n")
    return Panel(
        combined_text,
        border_style=NordColors.FROST_1,
        padding=(1, 2),
        title=Text(f"v{VERSION}", style=f"bold {NordColors.SNOW_STORM_2}"),
        title_align="right",
        box=box.ROUNDED,
    )


def print_message(
    text: str, style: str = NordColors.FROST_2, prefix: str = "•"
) -> None:
    console.print(f"[{style}]{prefix} {text}[/{style}]")


def print_error(message: str) -> None:
    print_message(message, NordColors.RED, "✗")


def print_success(message: str) -> None:
    print_message(message, NordColors.GREEN, "✓")


def print_warning(message: str) -> None:
    print_message(message, NordColors.YELLOW, "⚠")


def print_section(title: str) -> None:
    console.print()
    console.print(f"[bold {NordColors.FROST_3}]{title}[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * len(title)}[/]")


def display_panel(title: str, message: str, style: str = NordColors.FROST_2) -> None:
    panel = Panel(
        message,
        title=title,
        border_style=style,
        padding=(1, 2),
        box=box.ROUNDED,
    )
    console.print(panel)


# ----------------------------------------------------------------
# Logging and Configuration
# ----------------------------------------------------------------
def setup_logging(log_file: Union[str, Path]) -> logging.Logger:
    """
    Log warnings to the console through Rich and everything to log_file.

    An unwritable log file leaves the console handler in place.
    """
    logger.setLevel(logging.DEBUG)
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()
    logger.propagate = False

    console_handler = RichHandler(console=console, rich_tracebacks=True, markup=False)
    console_handler.setLevel(logging.WARNING)
    logger.addHandler(console_handler)

    log_file = Path(log_file)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Could not open log file {log_file}: {e}")
        return logger
    file_handler.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    try:
        os.chmod(str(log_file), 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_file}: {e}")
    return logger


def load_config(path: Union[str, Path], required: bool = False) -> DevUserConfig:
    """
    Overlay the JSON object stored at path on the default configuration.

    Raises:
        ConfigError: if the file is missing while required, is not a JSON
            object, or holds unknown keys or values of the wrong type.
    """
    path = Path(path)
    if not path.exists():
        if required:
            raise ConfigError(f"Configuration file {path} does not exist")
        return DevUserConfig()
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read configuration file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} must contain a JSON object")

    defaults = DevUserConfig()
    known = {f.name for f in fields(DevUserConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration keys in {path}: {', '.join(unknown)}")
    for key, value in data.items():
        expected = type(getattr(defaults, key))
        if not isinstance(value, expected) or isinstance(value, bool):
            raise ConfigError(
                f"Configuration key '{key}' must be of type {expected.__name__}"
            )
    return DevUserConfig(**data)


# ----------------------------------------------------------------
# Templates
# ----------------------------------------------------------------
def render_vhost(account: DevAccount) -> str:
    return f"""
<VirtualHost *:80>
  ServerName {account.site_name}
  ServerAdmin {account.server_admin}
  DocumentRoot {account.public_html}
  LogLevel warn
  ErrorLog ${{APACHE_LOG_DIR}}/error.{account.site_name}.log
  CustomLog ${{APACHE_LOG_DIR}}/access.{account.site_name}.log combined

  <Directory />
    Options FollowSymLinks
    AllowOverride None
  </Directory>

  <Directory {account.public_html}/>
    Options All
    AllowOverride All
    Require all granted
  </Directory>

</VirtualHost>

<VirtualHost *:443>
  ServerName {account.site_name}
  ServerAdmin {account.server_admin}
  DocumentRoot {account.public_html}
  SSLEngine on
  SSLCertificateFile {account.cert_file}
  SSLCertificateKeyFile {account.key_file}
</VirtualHost>
"""


def render_mysql_cnf(account: DevAccount, password: str) -> str:
    return f"[client]\nuser={account.username}\npassword={password}\n"


def sql_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def mysql_grant_sql(account: DevAccount, password: str) -> str:
    grantee = f"{sql_quote(account.username)}@'localhost'"
    return (
        f"CREATE USER IF NOT EXISTS {grantee} IDENTIFIED BY {sql_quote(password)};\n"
        f"GRANT ALL ON `{account.database_pattern}`.* TO {grantee};\n"
    )


# ----------------------------------------------------------------
# Core Functionality
# ----------------------------------------------------------------
def redact(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "****")
    return text


def run_command(
    cmd: List[str],
    input_text: Optional[str] = None,
    secrets: Sequence[str] = (),
) -> subprocess.CompletedProcess:
    """
    Run a command in the foreground and return its completed process.

    Failures are logged, never raised: a non-zero exit status is returned as
    is, a missing executable is reported with return code 127 and one that
    cannot be executed with 126.
    """
    display = redact(" ".join(cmd), secrets)
    logger.debug(f"Running command: {display}")
    try:
        result = subprocess.run(
            cmd,
            input=input_text,
            capture_output=True,
            text=True,
            errors="replace",
            check=False,
        )
    except FileNotFoundError as e:
        logger.error(f"Command not found: {cmd[0]} ({e})")
        return subprocess.CompletedProcess(cmd, 127, "", str(e))
    except OSError as e:
        logger.error(f"Could not execute {cmd[0]}: {e}")
        return subprocess.CompletedProcess(cmd, 126, "", str(e))
    if result.returncode != 0:
        logger.warning(
            f"Command exited with status {result.returncode}: {display}"
            f" {redact(result.stderr.strip(), secrets)}"
        )
    return result


def user_exists(username: str) -> bool:
    try:
        pwd.getpwnam(username)
    except KeyError:
        return False
    return True


def is_root() -> bool:
    return os.geteuid() == 0 and os.getuid() == 0


def write_file(path: Path, content: str, mode: int = 0o644) -> bool:
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w") as f:
            # an existing file keeps its old mode through O_CREAT
            os.fchmod(f.fileno(), mode)
            f.write(content)
    except OSError as e:
        logger.error(f"Could not write {path}: {e}")
        return False
    logger.debug(f"Wrote {path}")
    return True


def make_directory(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create directory {path}: {e}")
        return False
    return True


def hash_password(password: str, scheme: str) -> str:
    result = run_command(
        ["openssl", "passwd", f"-{scheme}", "-stdin"], input_text=f"{password}\n"
    )
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def create_system_user(
    account: DevAccount, password: str, config: DevUserConfig
) -> None:
    crypted = hash_password(password, config.password_scheme)
    cmd = [
        "useradd",
        "-m",
        "-d",
        str(account.home_dir),
        f"--shell={config.login_shell}",
    ]
    if crypted:
        cmd += ["-p", crypted]
    else:
        # without -p the account stays locked instead of passwordless
        logger.error(
            f"Could not hash the password for {account.username}; "
            "creating the account locked"
        )
    cmd.append(account.username)
    run_command(cmd, secrets=[crypted])


def create_ftp_user(account: DevAccount, password: str, config: DevUserConfig) -> None:
    # chroot'd FTP comes with the login account
    logger.debug(f"FTP access for {account.username} is provided by the login")


def create_mysql_user(
    account: DevAccount, password: str, config: DevUserConfig
) -> None:
    run_command(
        ["mysql", f"--defaults-extra-file={config.mysql_defaults_file}"],
        input_text=mysql_grant_sql(account, password),
    )
    if write_file(account.mysql_cnf, render_mysql_cnf(account, password), 0o600):
        run_command(["chown", account.owner, str(account.mysql_cnf)])


def create_ssl_certificate(
    account: DevAccount, password: str, config: DevUserConfig
) -> None:
    make_directory(account.ssl_certs_dir)
    run_command(
        [
            "openssl",
            "req",
            "-nodes",
            "-newkey",
            f"rsa:{config.ssl_key_bits}",
            "-x509",
            "-days",
            str(config.ssl_days),
            "-subj",
            account.ssl_subject(config),
            "-keyout",
            str(account.key_file),
            "-out",
            str(account.cert_file),
        ]
    )
    run_command(["chown", "-R", account.owner, str(account.ssl_dir)])
    run_command(["chmod", "600", str(account.key_file)])


def create_apache_site(
    account: DevAccount, password: str, config: DevUserConfig
) -> None:
    write_file(account.site_config_file, render_vhost(account))


def enable_apache_site(
    account: DevAccount, password: str, config: DevUserConfig
) -> None:
    run_command(["a2ensite", account.site_name])


def reload_apache(account: DevAccount, password: str, config: DevUserConfig) -> None:
    # apache2ctl configtest rejects a missing DocumentRoot
    if make_directory(account.public_html):
        run_command(["chown", account.owner, str(account.public_html)])
    result = run_command(["apache2ctl", "configtest"])
    if result.returncode == 0:
        run_command(["apache2ctl", "graceful"])
    else:
        logger.warning("Apache configuration test failed; skipping graceful reload")


StepFunc = Callable[[DevAccount, str, DevUserConfig], None]

PROVISIONING_STEPS: List[Tuple[str, StepFunc]] = [
    ("Creating local user", create_system_user),
    ("Creating FTP user", create_ftp_user),
    ("Creating mysql user", create_mysql_user),
    ("Creating self-signed SSL certificates", create_ssl_certificate),
    ("Creating Apache site config file", create_apache_site),
    ("Enabling Apache site config file", enable_apache_site),
    ("Loading Apache site config file", reload_apache),
]


def provision(account: DevAccount, password: str, config: DevUserConfig) -> None:
    """
    Run every provisioning step for account, in order.

    A failing step is logged and the remaining steps still run.
    """
    print_section("Processing")
    for label, step in PROVISIONING_STEPS:
        logger.info(f"{label} for {account.username}")
        with console.status(f"[bold {NordColors.FROST_2}]{label}...[/]"):
            step(account, password, config)
        print_success(f"{label}... Done.")


# ----------------------------------------------------------------
# Command Line Interface
# ----------------------------------------------------------------
def username_type(value: str) -> str:
    if not USERNAME_PATTERN.match(value):
        raise argparse.ArgumentTypeError(f"invalid username '{value}'")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="createdevuser",
        usage=USAGE,
        description=f"{APP_NAME} v{VERSION}: create a web development account",
    )
    parser.add_argument("username", type=username_type, help="New login name")
    parser.add_argument("password", help="Initial password for login and MySQL")
    parser.add_argument(
        "-c",
        "--config",
        help=f"JSON configuration file (default: {DEFAULT_CONFIG_FILE} if present)",
    )
    parser.add_argument("-d", "--domain", help="Override the configured server domain")
    parser.add_argument("-l", "--log-file", help="Override the configured log file")
    return parser


def confirm_creation(username: str, password: str) -> bool:
    try:
        answer = Prompt.ask(
            f'[bold]Create new user "{username}" with password "{escape(password)}"? (y/n)[/]'
        )
    except EOFError:
        return False
    return answer.strip() == "y"


def signal_handler(sig: int, frame: Any) -> None:
    try:
        sig_name = signal.Signals(sig).name
        print_warning(f"Process interrupted by {sig_name}")
    except ValueError:
        print_warning(f"Process interrupted by signal {sig}")
    logger.error(f"Interrupted by signal {sig}; provisioning may be incomplete")
    sys.exit(128 + sig)


def run(argv: Optional[List[str]] = None) -> int:
    if not is_root():
        print_error("Error - must be root.")
        console.print(f"Usage:  {USAGE}")
        return EXIT_NOT_ROOT

    args = build_parser().parse_args(argv)

    try:
        if args.config:
            config = load_config(args.config, required=True)
        else:
            config = load_config(DEFAULT_CONFIG_FILE)
    except ConfigError as e:
        print_error(escape(str(e)))
        return EXIT_CONFIG_ERROR
    if args.domain:
        config.server_domain = args.domain
    if args.log_file:
        config.log_file = args.log_file

    setup_logging(config.log_file)
    logger.debug(f"Configuration: {config.to_dict()}")

    if user_exists(args.username):
        print_error(f"Error - user {args.username} already exists.")
        logger.info(f"Refusing to create existing user {args.username}")
        return EXIT_USER_EXISTS

    account = DevAccount.from_config(args.username, config)
    console.print(create_header())
    if not confirm_creation(args.username, args.password):
        print_warning("Cancelled.")
        logger.info(f"Creation of {args.username} cancelled by operator")
        return EXIT_CANCELLED

    provision(account, args.password, config)

    display_panel(
        "User creation complete",
        f"{account.site_name} is served from {account.public_html} "
        f"(which can be a symlink)",
        NordColors.GREEN,
    )
    logger.info(f"Provisioned {account.username} as {account.site_name}")
    return EXIT_SUCCESS


def main() -> None:
    """
    Entry point: install signal handlers and exit with the result of run().
    """
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    try:
        sys.exit(run())
    except Exception as e:
        print_error(f"An unexpected error occurred: {e}")
        console.print_exception()
        sys.exit(1)


if __name__ == "__main__":
    main()
