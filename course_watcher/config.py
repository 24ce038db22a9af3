"""
Configuration for the Course Watcher pipeline.

Settings are read from environment variables by Config.from_env() and can
be overridden by command line flags. validate() checks the whole
configuration up front so that a misconfiguration is reported before the
first cycle runs.

Environment variables:
- COURSEWATCH_URL, COURSEWATCH_DB_PATH
- COURSEWATCH_POINTS_FILTER, COURSEWATCH_POINTS_EXACT,
  COURSEWATCH_POINTS_MIN, COURSEWATCH_POINTS_MAX
- COURSEWATCH_EMAIL_TO (comma-separated), COURSEWATCH_EMAIL_FROM
- COURSEWATCH_SMS_TO (comma-separated), TWILIO_FROM_NUMBER
- COURSEWATCH_WEBHOOK_URL
- SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD
- TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN
- LOG_LEVEL, DRY_RUN
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from course_watcher.fetch import DEFAULT_URL, validate_url
from course_watcher.filter import PointsFilter, resolve_points_filter
from course_watcher.storage import DEFAULT_DB_PATH
from course_watcher.utils import ConfigError, get_env_var, get_logger


# Module logger
logger = get_logger("config")

MIN_INTERVAL_SECONDS = 10
DEFAULT_INTERVAL = 60
DEFAULT_SMTP_PORT = 587

TRUE_VALUES = ("true", "1", "yes")


def validate_interval(seconds: int) -> None:
    """
    Check the polling interval of the start command.

    Args:
        seconds: Interval between cycles.

    Raises:
        ConfigError: If the interval is shorter than MIN_INTERVAL_SECONDS.
    """
    if seconds < MIN_INTERVAL_SECONDS:
        raise ConfigError(
            f"Invalid interval: {seconds} seconds is too short. "
            f"Minimum is {MIN_INTERVAL_SECONDS} seconds."
        )


def parse_optional_float(value: Optional[str], name: str) -> Optional[float]:
    """
    Parse an optional numeric setting.

    Args:
        value: Raw string value, or None if unset.
        name: Setting name used in the error message.

    Returns:
        The parsed float, or None for an unset or blank value.

    Raises:
        ConfigError: If the value is not a number.
    """
    if value is None or value.strip() == "":
        return None

    try:
        return float(value.strip())
    except ValueError:
        raise ConfigError(f"Invalid value for {name}: '{value}' is not a number")


def is_valid_email(email: str) -> bool:
    """
    Loose email address check: one "@", non-empty local part, dotted domain.

    Args:
        email: Address to check.

    Returns:
        True if the address looks valid.
    """
    email = email.strip()
    if not email:
        return False

    parts = email.split("@")
    if len(parts) != 2:
        return False

    local, domain = parts
    return bool(local) and bool(domain) and "." in domain


def extract_email_from_address(address: str) -> str:
    """
    Extract the address from a "Name <email>" sender string.

    Args:
        address: Either "Name <user@example.com>" or a bare address.

    Returns:
        The bare email address.
    """
    address = address.strip()
    start = address.find("<")
    end = address.find(">")
    if start != -1 and end != -1:
        return address[start + 1:end].strip()
    return address


def _clean_phone(phone: str) -> str:
    return re.sub(r"[\s-]", "", phone)


def normalize_norwegian_phone(phone: str) -> Optional[str]:
    """
    Normalize a Norwegian phone number to "+47XXXXXXXX".

    Accepts "+4712345678", "4712345678" and "12345678". Norwegian numbers
    have eight digits, the first of which is 2-9.

    Args:
        phone: Raw phone number, spaces and dashes allowed.

    Returns:
        Normalized number, or None if invalid.
    """
    cleaned = _clean_phone(phone)
    digits = cleaned[1:] if cleaned.startswith("+") else cleaned

    if not digits.isdigit() or not digits.isascii():
        return None

    if digits.startswith("47") and len(digits) == 10:
        local = digits[2:]
    elif len(digits) == 8:
        local = digits
    else:
        return None

    if local[0] not in "23456789":
        return None

    return f"+47{local}"


def normalize_twilio_phone(phone: str) -> Optional[str]:
    """
    Validate a Twilio sender number (U.S. or Norwegian).

    U.S. numbers are "+1" followed by 10 digits, Norwegian numbers "+47"
    followed by 8 digits starting with 2-9.

    Args:
        phone: Raw phone number, spaces and dashes allowed.

    Returns:
        Cleaned number, or None if invalid.
    """
    cleaned = _clean_phone(phone)
    if not cleaned.startswith("+"):
        return None

    digits = cleaned[1:]
    if not digits.isdigit() or not digits.isascii():
        return None

    if digits.startswith("1") and len(digits) == 11:
        return cleaned

    if digits.startswith("47") and len(digits) == 10 and digits[2] in "23456789":
        return cleaned

    return None


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Config:
    """
    Complete runtime configuration.

    Attributes:
        url: Course availability page to watch.
        db_path: SQLite database file (":memory:" for a throwaway store).
        points_filter_expr: Filter expression, takes precedence when it parses.
        points_exact: Exact points filter.
        points_min: Inclusive minimum points.
        points_max: Inclusive maximum points.
        email_to: Comma-separated email recipients.
        email_from: Sender, "Name <email>" or bare address.
        sms_to: Comma-separated Norwegian phone numbers.
        sms_from: Twilio sender number.
        webhook_url: Endpoint receiving JSON change reports.
        smtp_host: SMTP server host.
        smtp_port: SMTP server port (465 uses implicit TLS).
        smtp_user: SMTP login.
        smtp_password: SMTP password.
        twilio_account_sid: Twilio account SID.
        twilio_auth_token: Twilio auth token.
        log_level: Logging level name.
        dry_run: Log notifications instead of sending them.
    """
    url: str = DEFAULT_URL
    db_path: str = DEFAULT_DB_PATH
    points_filter_expr: Optional[str] = None
    points_exact: Optional[float] = None
    points_min: Optional[float] = None
    points_max: Optional[float] = None
    email_to: Optional[str] = None
    email_from: Optional[str] = None
    sms_to: Optional[str] = None
    sms_from: Optional[str] = None
    webhook_url: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = DEFAULT_SMTP_PORT
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    log_level: str = "INFO"
    dry_run: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        """
        Load configuration from environment variables.

        Returns:
            Config with defaults for every unset variable.

        Raises:
            ConfigError: If a numeric variable is malformed.
        """
        smtp_port_raw = get_env_var("SMTP_PORT", required=False)
        try:
            smtp_port = int(smtp_port_raw) if smtp_port_raw else DEFAULT_SMTP_PORT
        except ValueError:
            raise ConfigError(f"Invalid value for SMTP_PORT: '{smtp_port_raw}' is not a port number")

        dry_run_raw = get_env_var("DRY_RUN", required=False, default="")

        return cls(
            url=get_env_var("COURSEWATCH_URL", required=False, default=DEFAULT_URL),
            db_path=get_env_var("COURSEWATCH_DB_PATH", required=False, default=DEFAULT_DB_PATH),
            points_filter_expr=get_env_var("COURSEWATCH_POINTS_FILTER", required=False),
            points_exact=parse_optional_float(
                get_env_var("COURSEWATCH_POINTS_EXACT", required=False), "COURSEWATCH_POINTS_EXACT"
            ),
            points_min=parse_optional_float(
                get_env_var("COURSEWATCH_POINTS_MIN", required=False), "COURSEWATCH_POINTS_MIN"
            ),
            points_max=parse_optional_float(
                get_env_var("COURSEWATCH_POINTS_MAX", required=False), "COURSEWATCH_POINTS_MAX"
            ),
            email_to=get_env_var("COURSEWATCH_EMAIL_TO", required=False),
            email_from=get_env_var("COURSEWATCH_EMAIL_FROM", required=False),
            sms_to=get_env_var("COURSEWATCH_SMS_TO", required=False),
            sms_from=get_env_var("TWILIO_FROM_NUMBER", required=False),
            webhook_url=get_env_var("COURSEWATCH_WEBHOOK_URL", required=False),
            smtp_host=get_env_var("SMTP_HOST", required=False),
            smtp_port=smtp_port,
            smtp_user=get_env_var("SMTP_USER", required=False),
            smtp_password=get_env_var("SMTP_PASSWORD", required=False),
            twilio_account_sid=get_env_var("TWILIO_ACCOUNT_SID", required=False),
            twilio_auth_token=get_env_var("TWILIO_AUTH_TOKEN", required=False),
            log_level=get_env_var("LOG_LEVEL", required=False, default="INFO").upper(),
            dry_run=dry_run_raw.lower() in TRUE_VALUES,
        )

    # -------------------------------------------------------------------------
    # Derived settings
    # -------------------------------------------------------------------------

    def email_recipients(self) -> List[str]:
        return _split_list(self.email_to)

    def email_enabled(self) -> bool:
        return bool(self.email_recipients())

    def sms_recipients(self) -> List[str]:
        """Valid recipients normalized to +47 format; invalid numbers are dropped."""
        recipients = []
        for raw in _split_list(self.sms_to):
            number = normalize_norwegian_phone(raw)
            if number is None:
                logger.warning(f"Ignoring invalid SMS recipient: '{raw}'")
                continue
            recipients.append(number)
        return recipients

    def sms_enabled(self) -> bool:
        return bool(_split_list(self.sms_to))

    def webhook_enabled(self) -> bool:
        return bool(self.webhook_url)

    def points_filter(self) -> PointsFilter:
        """
        Resolve the active points filter.

        Raises:
            ConfigError: If the filter settings are invalid.
        """
        return resolve_points_filter(
            self.points_filter_expr,
            self.points_exact,
            self.points_min,
            self.points_max,
        )

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> None:
        """
        Validate the configuration.

        Raises:
            ConfigError: Naming the first offending setting.
        """
        if not validate_url(self.url):
            raise ConfigError(f"Invalid URL '{self.url}': must start with http:// or https://")

        self.points_filter()

        if self.email_enabled():
            self._validate_email()

        if self.sms_enabled():
            self._validate_sms()

        if self.webhook_enabled() and not validate_url(self.webhook_url):
            raise ConfigError(f"Invalid webhook URL '{self.webhook_url}': must start with http:// or https://")

        logger.debug("Configuration validation passed")

    def _validate_email(self) -> None:
        if not self.email_from:
            raise ConfigError("Email notifications require COURSEWATCH_EMAIL_FROM (or --email-from) to be set")

        for email in self.email_recipients():
            if not is_valid_email(email):
                raise ConfigError(f"Invalid email recipient '{email}': expected format user@domain.com")

        if not is_valid_email(extract_email_from_address(self.email_from)):
            raise ConfigError(
                f"Invalid sender address '{self.email_from}': expected "
                f"\"Name <email@domain.com>\" or \"email@domain.com\""
            )

        if not self.smtp_host:
            raise ConfigError("Email notifications require SMTP_HOST to be set")

    def _validate_sms(self) -> None:
        if not self.sms_from:
            raise ConfigError("SMS notifications require TWILIO_FROM_NUMBER (or --sms-from) to be set")

        if normalize_twilio_phone(self.sms_from) is None:
            raise ConfigError(
                f"Invalid Twilio phone number '{self.sms_from}': expected "
                f"+1XXXXXXXXXX (U.S.) or +47XXXXXXXX (Norwegian)"
            )

        if not self.sms_recipients():
            raise ConfigError(
                f"No valid Norwegian phone numbers in '{self.sms_to}': expected "
                f"+4712345678, 4712345678 or 12345678"
            )

        if not self.twilio_account_sid or not self.twilio_auth_token:
            raise ConfigError("SMS notifications require TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN to be set")
