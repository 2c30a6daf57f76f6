"""
RabbitMQ User Management Controller for Kubernetes

This controller manages RabbitMQ users, their tags and administrator status
based on Kubernetes ConfigMaps and Secrets. It drives ``rabbitmqctl`` and parses
its text output to discover live state, then issues the minimal set of commands
needed to converge.

Features:
- Version-aware parsing of ``list_users`` output (legacy and tagged formats)
- Administrator flag folded into the reserved ``administrator`` tag
- Readiness gate and bounded retries for a cluster that is slow to answer
- Memoized cluster state with explicit renewal
- Structured logging with severity levels
- Dry-run mode support
"""

import os
import re
import sys
import time
import yaml
import base64
import logging
import subprocess
import threading
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field, asdict

# ANSI color codes
BLUE = "\033[94m"
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("rabbitmq-user-controller")


# ============================================================================
# CONFIGURATION
# ============================================================================

class Config:
    """Controller configuration loaded from environment variables"""

    # Kubernetes settings
    NAMESPACE = os.getenv("NAMESPACE", "rabbitmq")
    CONFIGMAP_NAME = os.getenv("CONFIGMAP_NAME", "rabbitmq-users-config")
    CONFIGMAP_KEY = os.getenv("CONFIGMAP_KEY", "users.yaml")
    SECRET_NAME_TEMPLATE = os.getenv("SECRET_NAME_TEMPLATE", "rabbitmq-user-{user}")
    SECRET_PASSWORD_KEY = os.getenv("SECRET_PASSWORD_KEY", "password")

    # rabbitmqctl settings
    RABBITMQCTL = os.getenv("RABBITMQCTL", "rabbitmqctl")
    # rabbitmqctl probes $HOME for its cookie and config; pin it somewhere writable
    RABBITMQCTL_HOME = os.getenv("RABBITMQCTL_HOME", "/tmp")
    COMMAND_TIMEOUT = int(os.getenv("COMMAND_TIMEOUT", "30"))

    # Readiness gate and retry settings
    WAIT_COUNT = int(os.getenv("WAIT_COUNT", "30"))
    WAIT_STEP = int(os.getenv("WAIT_STEP", "6"))
    WAIT_TIMEOUT = int(os.getenv("WAIT_TIMEOUT", "10"))

    # Controller settings
    SYNC_INTERVAL = int(os.getenv("SYNC_INTERVAL", "30"))
    DRY_RUN = os.getenv("DRY_RUN", "false").lower() == "true"
    MAX_RETRIES = int(os.getenv("MAX_RETRIES", "5"))
    RETRY_BACKOFF_BASE = float(os.getenv("RETRY_BACKOFF_BASE", "2.0"))

    # First release whose list_users output carries tags
    TAG_SUPPORT_THRESHOLD = 2.41


ADMIN_TAG = "administrator"


# ============================================================================
# ERRORS
# ============================================================================

class RabbitmqctlError(RuntimeError):
    """Base class for failures talking to rabbitmqctl"""


class ExecutionFailure(RabbitmqctlError):
    """rabbitmqctl could not be started or exited with a non-zero status"""

    def __init__(self, args: List[str], message: str):
        self.command = list(args)
        super().__init__(f"rabbitmqctl {' '.join(args)} failed: {message}")


class CommandTimeout(RabbitmqctlError):
    """rabbitmqctl did not finish before its deadline"""

    def __init__(self, args: List[str], timeout: Optional[float]):
        self.command = list(args)
        self.timeout = timeout
        super().__init__(f"rabbitmqctl {' '.join(args)} timed out after {timeout}s")


class RetryExhausted(RabbitmqctlError):
    """All bounded attempts of an operation failed"""

    def __init__(self, operation: str, attempts: int, elapsed: float):
        self.operation = operation
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(
            f"{operation} is still failing after {elapsed:g} seconds expired! ({attempts} attempts)"
        )


# ============================================================================
# DATA MODELS
# ============================================================================

def effective_tags(custom: Iterable[str], admin: bool) -> FrozenSet[str]:
    """
    Fold the admin flag into a full tag set

    Args:
        custom: Custom tags, without the reserved administrator tag
        admin: Whether the user should be an administrator

    Returns:
        The tag set to send to the broker
    """
    tags = frozenset(custom)
    if admin:
        return tags | {ADMIN_TAG}
    return tags - {ADMIN_TAG}


@dataclass(frozen=True)
class UserTags:
    """Live tags of one user, with the administrator tag split out"""
    tags: FrozenSet[str] = frozenset()
    admin: bool = False

    @property
    def effective(self) -> FrozenSet[str]:
        return effective_tags(self.tags, self.admin)


@dataclass(frozen=True)
class DiscoveredUser:
    """A user found in the live listing; credentials are never listed"""
    name: str


@dataclass
class DesiredUser:
    """User specification from ConfigMap"""
    name: str
    password: Optional[str] = field(default=None, repr=False)
    tags: List[str] = field(default_factory=list)
    admin: bool = False
    ensure: str = "present"
    provider: Optional[DiscoveredUser] = None

    def __post_init__(self):
        if self.ensure not in ("present", "absent"):
            raise ValueError(f"User {self.name}: ensure must be 'present' or 'absent', got {self.ensure!r}")
        if ADMIN_TAG in self.tags:
            raise ValueError(f"User {self.name}: use 'admin: true' instead of the '{ADMIN_TAG}' tag")
        self.tags = sorted(set(self.tags))


@dataclass
class ReconciliationStats:
    """Statistics for a reconciliation cycle"""
    users_created: int = 0
    users_updated: int = 0
    users_deleted: int = 0
    users_unchanged: int = 0
    drift_detected: int = 0
    errors: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def record(self, outcome: str):
        """Count the outcome of one converge call"""
        if outcome == "created":
            self.users_created += 1
        elif outcome == "updated":
            self.users_updated += 1
        elif outcome == "deleted":
            self.users_deleted += 1
        else:
            self.users_unchanged += 1
            return
        self.drift_detected += 1

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        return {
            **asdict(self),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds()
        }


# ============================================================================
# RABBITMQCTL RUNNER
# ============================================================================

class RabbitmqctlRunner:
    """Runs rabbitmqctl and returns its captured output"""

    def __init__(self, binary: Optional[str] = None, home: Optional[str] = None):
        self.binary = binary or Config.RABBITMQCTL
        self.env = {**os.environ, "HOME": home or Config.RABBITMQCTL_HOME}

    def run(self, args: List[str], timeout: Optional[float] = None) -> str:
        """
        Run rabbitmqctl with the given arguments

        Args:
            args: Arguments passed after the binary name
            timeout: Seconds before the process is killed

        Returns:
            Captured stdout
        """
        cmd = [self.binary, *args]
        logger.debug(f"Executing: {' '.join(cmd)}")
        try:
            # subprocess.run kills the child when the timeout expires
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self.env,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(args, timeout) from e
        except OSError as e:
            raise ExecutionFailure(args, str(e)) from e

        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            raise ExecutionFailure(args, f"exit status {result.returncode}: {message}")
        return result.stdout


# ============================================================================
# CLUSTER STATE
# ============================================================================

_UNSET = object()


class ClusterState:
    """
    Cached view of the broker: its version and its user listing

    Both caches are filled lazily and dropped only by an explicit
    invalidation. One lock serializes every read and invalidation.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.version = _UNSET
        self.users: Optional[Dict[str, UserTags]] = None

    def invalidate_version(self):
        with self.lock:
            self.version = _UNSET

    def invalidate_users(self):
        with self.lock:
            self.users = None

    def invalidate(self):
        with self.lock:
            self.version = _UNSET
            self.users = None


# ============================================================================
# VERSION PROBE
# ============================================================================

_VERSION_RE = re.compile(r'"RabbitMQ","([\d.]+)"')


def parse_version(status_text: str) -> Optional[float]:
    """
    Extract the broker version from ``rabbitmqctl status`` output

    The first matching line wins. "3.8.9" becomes 3.89: the major number is
    kept and the remaining components are concatenated as the fraction.

    Returns:
        The version as a float, or None if it cannot be found
    """
    for line in status_text.splitlines():
        match = _VERSION_RE.search(line)
        if not match:
            continue
        parts = match.group(1).split(".")
        try:
            return float(f"{parts[0]}.{''.join(parts[1:])}")
        except ValueError:
            logger.warning(f"Could not parse RabbitMQ version from: {line.strip()}")
            return None
    return None


class VersionProbe:
    """Memoized probe of the broker version and the capabilities it implies"""

    def __init__(self, runner: RabbitmqctlRunner, state: ClusterState):
        self.runner = runner
        self.state = state

    def version(self, timeout: Optional[float] = None) -> Optional[float]:
        with self.state.lock:
            if self.state.version is not _UNSET:
                return self.state.version
            try:
                status_text = self.runner.run(
                    ["-q", "status"],
                    timeout=timeout or Config.COMMAND_TIMEOUT
                )
            except RabbitmqctlError as e:
                logger.warning(f"Could not query RabbitMQ status, assuming legacy broker: {e}")
                status_text = ""
            self.state.version = parse_version(status_text)
            logger.debug(f"RabbitMQ version: {self.state.version}")
            return self.state.version

    def version_with_renew(self, timeout: Optional[float] = None) -> Optional[float]:
        with self.state.lock:
            self.state.invalidate_version()
            return self.version(timeout=timeout)

    def tag_support(self) -> bool:
        """Whether list_users reports tags and set_user_tags is available"""
        version = self.version()
        return version is not None and version > Config.TAG_SUPPORT_THRESHOLD


# ============================================================================
# USER LIST PARSING
# ============================================================================

class LegacyUserFormat:
    """
    Brokers without tag support: ``name<TAB>true|false``

    Only the admin bit exists, toggled with set_admin / clear_admin.
    """

    LINE_RE = re.compile(r"^(\S+)\s+(true|false)")

    def parse_line(self, line: str) -> Optional[Tuple[str, UserTags]]:
        match = self.LINE_RE.match(line)
        if not match:
            return None
        return match.group(1).strip(), UserTags(frozenset(), match.group(2) == "true")

    def mutation_commands(self, name: str, tags: FrozenSet[str]) -> List[List[str]]:
        # custom tags cannot be represented here
        if ADMIN_TAG in tags:
            return [["set_admin", name]]
        return [["clear_admin", name]]


class TaggedUserFormat:
    """Brokers with tag support: ``name<TAB>[tag1, tag2]``"""

    LINE_RE = re.compile(r"(.*?)\[(.*?)\]")

    def parse_line(self, line: str) -> Optional[Tuple[str, UserTags]]:
        match = self.LINE_RE.search(line)
        if not match:
            return None
        name = match.group(1).strip()
        if not name:
            return None
        admin = False
        tags = set()
        for tag in match.group(2).split(","):
            tag = tag.strip()
            if tag == ADMIN_TAG:
                admin = True
            elif tag:
                tags.add(tag)
        return name, UserTags(frozenset(tags), admin)

    def mutation_commands(self, name: str, tags: FrozenSet[str]) -> List[List[str]]:
        # set_user_tags replaces the whole set, an empty list clears it
        return [["set_user_tags", name, *sorted(tags)]]


LEGACY_FORMAT = LegacyUserFormat()
TAGGED_FORMAT = TaggedUserFormat()


def select_user_format(tag_support: bool):
    """Pick the listing/mutation strategy for the broker's capabilities"""
    return TAGGED_FORMAT if tag_support else LEGACY_FORMAT


def parse_user_list(lines: Iterable[str], tag_support: bool) -> Dict[str, UserTags]:
    """
    Parse ``rabbitmqctl -q list_users`` output

    Lines that do not match the expected format are skipped. When a name is
    listed twice the last line wins.

    Args:
        lines: Lines of listing output
        tag_support: Whether the broker lists tags

    Returns:
        Dictionary mapping username to UserTags
    """
    user_format = select_user_format(tag_support)
    users: Dict[str, UserTags] = {}
    for line in lines:
        parsed = user_format.parse_line(line)
        if parsed:
            name, user_tags = parsed
            users[name] = user_tags
    return users


# ============================================================================
# RETRIES
# ============================================================================

class RetryExecutor:
    """Bounded fixed-delay retries for a cluster that may not be ready yet"""

    def __init__(self, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.sleep = sleep
        self.clock = clock

    def retry(self, operation: Callable[[float], object], max_attempts: int = 30,
              step_delay: float = 6, timeout: float = 10, description: str = "Command"):
        """
        Run an operation until it succeeds or attempts run out

        Execution failures and timeouts are both retried; the first success
        is returned immediately.

        Args:
            operation: Callable receiving the per-attempt timeout in seconds
            max_attempts: Maximum number of attempts
            step_delay: Seconds to wait between attempts
            timeout: Deadline for each attempt
            description: Operation name used in logs and errors

        Returns:
            Whatever the operation returned
        """
        for attempt in range(1, max_attempts + 1):
            try:
                output = operation(timeout)
            except (ExecutionFailure, CommandTimeout) as e:
                logger.debug(f"{description} failed (attempt {attempt}/{max_attempts}), retrying: {e}")
                if attempt < max_attempts:
                    self.sleep(step_delay)
            else:
                logger.debug(f"{description} succeeded after {(attempt - 1) * step_delay:g} seconds")
                return output

        elapsed = max_attempts * step_delay
        logger.error(f"{RED}{description} is still failing after {elapsed:g} seconds expired{RESET}")
        raise RetryExhausted(description, max_attempts, elapsed)

    def wait_for_ready(self, runner: RabbitmqctlRunner, max_attempts: int = 30,
                       step_delay: float = 6, timeout: float = 10) -> bool:
        """
        Wait until RabbitMQ can list its users and channels

        A broken or joining cluster may hang on list_channels, so both
        queries share one deadline per attempt.
        """
        def probe(attempt_timeout: float) -> bool:
            deadline = self.clock() + attempt_timeout
            for args in (["list_users"], ["list_channels"]):
                remaining = deadline - self.clock()
                if remaining <= 0:
                    raise CommandTimeout(args, attempt_timeout)
                runner.run(args, timeout=remaining)
            return True

        started = self.clock()
        self.retry(probe, max_attempts, step_delay, timeout, description="RabbitMQ readiness")
        logger.info(f"RabbitMQ is online after {self.clock() - started:.0f} seconds")
        return True


# ============================================================================
# USER RECONCILER
# ============================================================================

class UserReconciler:
    """
    Owns the cached live state and the command path for user resources
    """

    def __init__(self, runner: RabbitmqctlRunner, state: Optional[ClusterState] = None,
                 dry_run: bool = False):
        self.runner = runner
        self.state = state or ClusterState()
        self.probe = VersionProbe(runner, self.state)
        self.dry_run = dry_run

    def tag_support(self) -> bool:
        return self.probe.tag_support()

    def user_format(self):
        return select_user_format(self.tag_support())

    def users(self, timeout: Optional[float] = None) -> Dict[str, UserTags]:
        """Return the live user snapshot, listing users on first access"""
        with self.state.lock:
            if self.state.users is None:
                self.probe.version(timeout=timeout)
                tag_support = self.tag_support()
                listing = self.runner.run(
                    ["-q", "list_users"],
                    timeout=timeout or Config.COMMAND_TIMEOUT
                )
                self.state.users = parse_user_list(listing.splitlines(), tag_support)
                logger.debug(f"Found {len(self.state.users)} users (tag support: {tag_support})")
            return self.state.users

    def users_with_renew(self, timeout: Optional[float] = None) -> Dict[str, UserTags]:
        with self.state.lock:
            self.state.invalidate_users()
            return self.users(timeout=timeout)

    def refresh(self, timeout: Optional[float] = None) -> Dict[str, UserTags]:
        """Drop both caches and re-read version and users"""
        with self.state.lock:
            self.state.invalidate()
            self.probe.version(timeout=timeout)
            return self.users(timeout=timeout)

    def invalidate(self):
        self.state.invalidate()

    def instances(self) -> List[DiscoveredUser]:
        """One record per live user; passwords cannot be discovered"""
        return [DiscoveredUser(name) for name in self.users()]

    def prefetch(self, catalog: Dict[str, DesiredUser]) -> Dict[str, DiscoveredUser]:
        """
        Bind desired users to the live users with the same name

        Args:
            catalog: Desired users keyed by name

        Returns:
            Dictionary of the bindings that were made
        """
        logger.debug("Prefetching rabbitmq users")
        present = {instance.name: instance for instance in self.instances()}
        bound = {}
        for name, resource in catalog.items():
            found = present.get(name)
            if found:
                resource.provider = found
                bound[name] = found
        return bound

    def execute(self, args: List[str]) -> Optional[str]:
        """Run a mutating command unless in dry-run mode"""
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would run: rabbitmqctl {' '.join(_mask(args))}")
            return None
        output = self.runner.run(args, timeout=Config.COMMAND_TIMEOUT)
        logger.info(f"{WHITE}Ran: rabbitmqctl {' '.join(_mask(args))}{RESET}")
        return output

    def provider(self, resource: DesiredUser) -> "UserProvider":
        return UserProvider(self, resource)

    def converge(self, resource: DesiredUser) -> str:
        """
        Bring one user to its desired state

        Returns:
            One of "created", "deleted", "updated", "unchanged" or "absent"
        """
        provider = self.provider(resource)
        exists = provider.exists()

        if resource.ensure == "absent":
            if not exists:
                return "absent"
            provider.destroy()
            self.state.invalidate_users()
            return "deleted"

        if not exists:
            provider.create()
            self.state.invalidate_users()
            return "created"

        live = provider.get_user_tags()

        if self.tag_support():
            # set_user_tags replaces tags and admin bit in one command
            desired = effective_tags(resource.tags, resource.admin)
            if live.effective == desired:
                return "unchanged"
            logger.info(f"{YELLOW}Drift: {resource.name} tags are {sorted(live.effective)}, "
                        f"want {sorted(desired)}{RESET}")
            provider.apply_effective_tags(desired)
        else:
            if resource.tags:
                logger.debug(f"Broker has no tag support, ignoring tags of {resource.name}")
            if live.admin == resource.admin:
                return "unchanged"
            logger.info(f"{YELLOW}Drift: {resource.name} admin is {live.admin}, want {resource.admin}{RESET}")
            provider.set_admin(resource.admin)

        self.state.invalidate_users()
        return "updated"


def _mask(args: List[str]) -> List[str]:
    """Hide the password argument of add_user / change_password"""
    if args and args[0] in ("add_user", "change_password") and len(args) > 2:
        return [*args[:2], "****", *args[3:]]
    return args


class UserProvider:
    """Verbs for one desired user against the live broker"""

    def __init__(self, reconciler: UserReconciler, resource: DesiredUser):
        self.reconciler = reconciler
        self.resource = resource

    @property
    def name(self) -> str:
        return self.resource.name

    def exists(self, renew: bool = False) -> bool:
        users = self.reconciler.users_with_renew() if renew else self.reconciler.users()
        out = self.name in users
        logger.debug(f"exists? {self.name}: {out}")
        return out

    def create(self):
        """Create this user and set its tags"""
        logger.debug(f"Creating rabbitmq user '{self.name}'")
        if not self.resource.password:
            raise ValueError(f"Cannot create user {self.name} without a password")
        self.reconciler.execute(["add_user", self.name, self.resource.password])
        self.set_tags(self.resource.tags)

    def destroy(self):
        logger.debug(f"Deleting rabbitmq user '{self.name}'")
        self.reconciler.execute(["delete_user", self.name])

    def get_user_tags(self) -> UserTags:
        return self.reconciler.users().get(self.name, UserTags())

    def tags(self) -> List[str]:
        """Custom tags of this user, sorted, without the administrator tag"""
        return sorted(self.get_user_tags().tags)

    def set_tags(self, tags: Iterable[str]):
        """
        Set the custom tags of this user

        The administrator tag is kept if the user is an administrator now
        or should become one.
        """
        admin = self.get_user_tags().admin or self.resource.admin
        self.apply_effective_tags(effective_tags(tags, admin))

    def admin(self) -> bool:
        return self.get_user_tags().admin

    def set_admin(self, state: bool):
        self.apply_effective_tags(effective_tags(self.get_user_tags().tags, state))

    def apply_effective_tags(self, tags: FrozenSet[str]):
        """Send a full tag set, administrator tag included, to the broker"""
        for args in self.reconciler.user_format().mutation_commands(self.name, tags):
            self.reconciler.execute(args)


# ============================================================================
# KUBERNETES CLIENT
# ============================================================================

class KubernetesClient:
    """Reads the desired users and their passwords from Kubernetes"""

    def __init__(self):
        try:
            config.load_incluster_config()
        except config.ConfigException:
            logger.warning("Failed to load in-cluster config, trying local kubeconfig")
            config.load_kube_config()

        self.v1 = client.CoreV1Api()

    @staticmethod
    def secret_name(username: str) -> str:
        """Secret holding the password of a RabbitMQ user"""
        # Kubernetes object names allow neither '_' nor '@'
        safe = re.sub(r"[^a-z0-9.-]", "-", username.lower())
        return Config.SECRET_NAME_TEMPLATE.format(user=safe)

    def _read(self, kind: str, name: str, namespace: str, read: Callable):
        """
        Read one namespaced object with exponential backoff

        Args:
            kind: Object kind, for log messages
            name: Object name
            namespace: Kubernetes namespace
            read: CoreV1Api reader method

        Returns:
            The object, or None if it does not exist
        """
        for retry_count in range(Config.MAX_RETRIES + 1):
            try:
                return read(name, namespace)
            except ApiException as e:
                if e.status == 404:
                    logger.warning(f"{kind} {name} not found in namespace {namespace}")
                    return None
                if retry_count == Config.MAX_RETRIES:
                    logger.error(f"Failed to fetch {kind} {name} after {Config.MAX_RETRIES} retries: {e}")
                    raise
                sleep_time = Config.RETRY_BACKOFF_BASE ** retry_count
                logger.warning(f"Error fetching {kind} {name} (attempt {retry_count + 1}/{Config.MAX_RETRIES}), "
                               f"retrying in {sleep_time}s: {e}")
                time.sleep(sleep_time)

    def fetch_configmap(self, name: str, namespace: str) -> Optional[str]:
        """Return the users document of the ConfigMap, or None if it is missing"""
        cm = self._read("ConfigMap", name, namespace, self.v1.read_namespaced_config_map)
        if cm is None:
            return None
        return (cm.data or {}).get(Config.CONFIGMAP_KEY, "")

    def get_user_password(self, username: str, namespace: str) -> Optional[str]:
        """Return the decoded password of a user, or None if there is none"""
        secret_name = self.secret_name(username)
        secret = self._read("Secret", secret_name, namespace, self.v1.read_namespaced_secret)
        if secret is None:
            return None
        encoded_pw = (secret.data or {}).get(Config.SECRET_PASSWORD_KEY)
        if not encoded_pw:
            logger.error(f"Secret {secret_name} exists but has no '{Config.SECRET_PASSWORD_KEY}' field")
            return None
        return base64.b64decode(encoded_pw).decode()


# ============================================================================
# RECONCILIATION CONTROLLER
# ============================================================================

class RabbitmqUserController:
    """
    Main controller for reconciling RabbitMQ users
    """

    def __init__(self):
        self.k8s_client = KubernetesClient()
        self.runner = RabbitmqctlRunner()
        self.retry_executor = RetryExecutor()
        self.reconciler = UserReconciler(self.runner, dry_run=Config.DRY_RUN)
        logger.info("RabbitMQ User Controller initialized")

    def parse_desired_users(self, yaml_content: str) -> Dict[str, DesiredUser]:
        """
        Parse users.yaml content into DesiredUser objects

        Args:
            yaml_content: YAML string from ConfigMap

        Returns:
            Dictionary mapping username to DesiredUser
        """
        if not yaml_content:
            logger.warning("Empty ConfigMap content, no users to manage")
            return {}

        try:
            parsed = yaml.safe_load(yaml_content) or {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing users.yaml: {e}")
            return {}

        if not isinstance(parsed, dict):
            logger.error(f"users.yaml must be a mapping with a 'users' list, got {type(parsed).__name__}")
            return {}

        users = {}
        for user_data in parsed.get("users") or []:
            try:
                admin = user_data.get("admin", False)
                if not isinstance(admin, bool):
                    raise ValueError(f"admin must be true or false, got {admin!r}")
                spec = DesiredUser(
                    name=str(user_data["name"]),
                    password=user_data.get("password"),
                    tags=[str(tag) for tag in user_data.get("tags") or []],
                    admin=admin,
                    ensure=user_data.get("ensure", "present"),
                )
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.error(f"Skipping invalid user entry {user_data!r}: {e}")
                continue
            users[spec.name] = spec
        return users

    def reconcile_users(self, stats: ReconciliationStats):
        """
        Main reconciliation logic

        Args:
            stats: Statistics object to update
        """
        # Fetch desired state from ConfigMap
        yaml_content = self.k8s_client.fetch_configmap(
            Config.CONFIGMAP_NAME,
            Config.NAMESPACE
        )

        if yaml_content is None:
            logger.error("Failed to fetch ConfigMap, skipping reconciliation")
            stats.errors += 1
            return

        desired_users = self.parse_desired_users(yaml_content)

        # Don't trust any listing until the cluster answers
        self.retry_executor.wait_for_ready(
            self.runner,
            Config.WAIT_COUNT,
            Config.WAIT_STEP,
            Config.WAIT_TIMEOUT
        )
        self.retry_executor.retry(
            self.reconciler.refresh,
            Config.WAIT_COUNT,
            Config.WAIT_STEP,
            Config.WAIT_TIMEOUT,
            description="Listing users"
        )
        bound = self.reconciler.prefetch(desired_users)
        logger.info(f"Found {len(bound)} of {len(desired_users)} desired users on the broker")

        for username, user_spec in desired_users.items():
            try:
                if user_spec.ensure == "present" and not user_spec.provider and not user_spec.password:
                    user_spec.password = self.k8s_client.get_user_password(
                        username,
                        Config.NAMESPACE
                    )
                    if not user_spec.password:
                        logger.error(f"No password found for user {username}, skipping creation")
                        stats.errors += 1
                        continue

                stats.record(self.reconciler.converge(user_spec))
            except Exception as e:
                logger.error(f"Failed to reconcile user {username}: {e}")
                stats.errors += 1

    def run_reconciliation_loop(self):
        """
        Main control loop that runs continuously
        """
        logger.info(f"{GREEN}Controller started (DRY_RUN={Config.DRY_RUN}){RESET}")
        logger.info(f"Sync interval: {Config.SYNC_INTERVAL}s")

        while True:
            stats = ReconciliationStats(start_time=datetime.now())

            try:
                logger.info("=" * 60)
                logger.info("Starting reconciliation cycle")

                self.reconcile_users(stats)

                stats.end_time = datetime.now()

                # Print summary
                logger.info("=" * 60)
                logger.info(f"{WHITE}Reconciliation Summary:{RESET}")
                logger.info(f"  • Users created: {stats.users_created}")
                logger.info(f"  • Users updated: {stats.users_updated}")
                logger.info(f"  • Users deleted: {stats.users_deleted}")
                logger.info(f"  • Users unchanged: {stats.users_unchanged}")
                logger.info(f"  • Drift detected: {stats.drift_detected}")
                logger.info(f"  • Errors: {stats.errors}")
                logger.info(f"  • Duration: {stats.duration_seconds():.2f}s")
                logger.info("=" * 60)

            except RetryExhausted as e:
                logger.error(f"{RED}Cycle aborted: {e.operation} failed for {e.elapsed:g}s{RESET}")
                stats.errors += 1
            except Exception as e:
                logger.error(f"Unexpected error in reconciliation loop: {e}", exc_info=True)
                stats.errors += 1

            # Sleep until next cycle
            logger.info(f"{BLUE}Sleeping for {Config.SYNC_INTERVAL}s...{RESET}")
            time.sleep(Config.SYNC_INTERVAL)


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Main entry point"""
    try:
        controller = RabbitmqUserController()
        controller.run_reconciliation_loop()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
