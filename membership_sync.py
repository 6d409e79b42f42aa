#!/usr/bin/python3
# -*- coding: utf-8 -*-
"""
Group Membership Synchronization Toolkit.

This script keeps the membership of Check Point groups in line with a
declarative JSON file, using the management Web API. Every entry of the file
is a membership resource:

    {"key": "web-01-in-dmz", "type": "group_network_member",
     "name": "group-DMZ", "member": "host_10.1.1.1"}

    {"key": "dmz-servers", "type": "group_members", "name": "group-DMZ",
     "members": ["host_10.1.1.1", "host_10.1.1.2"], "tags": ["SOC"],
     "comments": "Managed by membership_sync", "color": "red"}

An optional "import_id" adopts an existing membership by its composite
identifier ("<group uid>/<member uid>" or "<group uid>/network_object_members")
instead of creating it.

The identifiers and fields of the memberships already managed are kept in a
local state file, which lets each run tell creations, updates and deletions
apart, and notice groups deleted by other clients (drift).

Key Features:
    • Create, refresh, update, import and delete of membership resources.
    • Recreation of memberships whose group was deleted outside of this tool.
    • Removal of memberships no longer declared.
    • Publish of the session only when it holds changes; discard on failure.
    • Lock mechanism to prevent concurrent script executions, which also keeps
      two runs from editing the same group at once.
    • Graceful signal handling for cleanup on termination (SIGINT/SIGTERM).
    • Error aggregation and email reporting using SMTP.
"""
import smtplib
from email.mime.text import MIMEText
from email.utils import formatdate
import json
import os
import sys
import logging
import fcntl
import atexit
import signal
from dataclasses import dataclass

from cp_mgmt_client import CpMgmtClient
from group_membership import VARIANTS, GroupMembership, GroupMembershipReconciler
from sync_errors import SyncError, ValidationError
from my_config import * #pylint: disable=wildcard-import


LOCK_HANDLE = None

logger = logging.getLogger('membership_sync')
formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')


class ErrorBufferHandler(logging.Handler):
    """
    A logging handler that captures error-level log messages into an in-memory list.

    The collected messages are sent by email at the end of the run.

    Attributes:
        errors (list[str]): Formatted error messages.
    """
    def __init__(self):
        super().__init__(level=logging.ERROR)
        self.errors = []

    def emit(self, record):
        msg = self.format(record)
        self.errors.append(msg)


error_handler = ErrorBufferHandler()
error_handler.setFormatter(formatter)


def configure_logging(log_file=LOG_FILE):
    """
    Attach the console, file and error buffer handlers to the shared logger.

    Console output shows INFO and above, the log file keeps DEBUG records and
    the error buffer collects ERROR records for the email report. Calling it
    twice does not duplicate handlers.
    """
    if error_handler in logger.handlers:
        return
    logger.setLevel(logging.DEBUG)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)
    logger.addHandler(error_handler)


def acquire_lock(lock_file=LOCK_FILE):
    """
    Acquire an exclusive file-based lock to prevent multiple instances of the program from running.

    Two runs managing the same groups would race on set-group, so a second
    instance exits instead of waiting.

    Returns:
        file object: The file handle representing the acquired lock.

    Exits:
        If another instance holds the lock, logs the error and exits with status 1.

    Side Effects:
        - Modifies the global `LOCK_HANDLE`.
        - Installs SIGINT and SIGTERM handlers.
        - Registers `release_lock()` with `atexit`.
    """
    global LOCK_HANDLE #pylint: disable=global-statement
    LOCK_HANDLE = open(lock_file, "w") #pylint: disable=consider-using-with,unspecified-encoding
    try:
        fcntl.flock(LOCK_HANDLE, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        logger.error("Another instance is already running. Exiting.")
        sys.exit(1)
    atexit.register(release_lock, lock_file)
    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    return LOCK_HANDLE


def release_lock(lock_file=LOCK_FILE):
    """
    Release the file-based process lock and remove the lock file.

    Safe to call more than once. Errors while unlocking are logged, not raised.
    """
    global LOCK_HANDLE #pylint: disable=global-statement
    if LOCK_HANDLE:
        try:
            fcntl.flock(LOCK_HANDLE, fcntl.LOCK_UN)
            LOCK_HANDLE.close()
            if os.path.exists(lock_file):
                os.remove(lock_file)
            logger.debug("Lock released and file removed.")
        except OSError as exception:
            logger.error("Error releasing lock: %s",exception)
        LOCK_HANDLE = None


def handle_signal(signum, _frame):
    """Release the lock and exit when SIGINT or SIGTERM is received."""
    logger.warning("Received signal %s. Cleaning up lock and exiting.",signum)
    release_lock()
    sys.exit(1)


def send_error_email(errors):
    """
    Send an error report email containing a list of error messages.

    Nothing is sent when `errors` is empty. SMTP settings come from my_config.

    Args:
        errors (list[str]): Error messages, one per line of the email body.
    """
    if not errors:
        return  # no errors, skip

    body = "\n".join(errors)
    msg = MIMEText(body, "plain", "utf-8")
    msg["Subject"] = EMAIL_SUBJECT
    msg["From"] = EMAIL_FROM
    msg["To"] = ", ".join(EMAIL_TO)
    msg["Date"] = formatdate(localtime=True)
    try:
        with smtplib.SMTP(SMTP_SERVER, SMTP_PORT, timeout=15) as server:
            server.sendmail(EMAIL_FROM, EMAIL_TO, msg.as_string())
        logger.info("Error report email sent successfully.")
    except (smtplib.SMTPException, OSError) as exception:
        logger.error("Failed to send error email: %s",exception)


@dataclass(frozen=True)
class DesiredResource:
    """A membership resource as declared in the desired state file."""
    key: str
    variant: object
    fields: GroupMembership
    import_id: str = None


def parse_desired_resource(entry):
    """
    Turn one entry of the desired state file into a DesiredResource.

    Raises:
        ValidationError: If the key or type is missing or unknown, or the
            fields do not fit the resource type.
    """
    if not isinstance(entry, dict):
        raise ValidationError(f'resource entry is not an object ({entry!r})')
    key = entry.get('key')
    if not isinstance(key, str) or not key:
        raise ValidationError(f"resource entry has no 'key' ({entry!r})")
    variant = VARIANTS.get(entry.get('type'))
    if variant is None:
        raise ValidationError(
                f"resource {key} has unknown type {entry.get('type')!r}, "
                f"expected one of {', '.join(sorted(VARIANTS))}"
                )
    if variant.multi and 'member' in entry:
        raise ValidationError(f"resource {key} of type {variant.resource_type} takes 'members', not 'member'")
    if not variant.multi:
        extra = [name for name in ('members', 'tags', 'comments', 'color') if name in entry]
        if extra:
            raise ValidationError(
                    f"resource {key} of type {variant.resource_type} does not take {', '.join(extra)}"
                    )
    return DesiredResource(
            key=key,
            variant=variant,
            fields=GroupMembership.from_dict(entry),
            import_id=entry.get('import_id')
            )


def load_desired_state(path):
    """
    Read the desired memberships.

    Invalid entries are logged and skipped so that one typo does not block
    the remaining resources. Duplicate keys keep their first entry.

    Returns:
        list[DesiredResource]

    Raises:
        OSError: If the file cannot be read.
        ValueError: If the file is not a JSON list.
    """
    with open(path, encoding='utf-8') as handle:
        data = json.load(handle)
    if not isinstance(data, list):
        raise ValueError(f'{path} must hold a JSON list of resources')
    resources = []
    seen = set()
    for entry in data:
        try:
            resource = parse_desired_resource(entry)
        except ValidationError as validation_error:
            logger.error('Skipping invalid resource: %s', validation_error)
            continue
        if resource.key in seen:
            logger.error('Skipping duplicate resource key %s', resource.key)
            continue
        seen.add(resource.key)
        resources.append(resource)
    return resources


def load_state(path):
    """
    Read the managed memberships, an empty state if the file does not exist yet.

    Returns:
        dict: key -> {'type': str, 'id': str, 'fields': dict}
    """
    if not os.path.exists(path):
        logger.info('No state file %s, starting from an empty state.', path)
        return {}
    with open(path, encoding='utf-8') as handle:
        data = json.load(handle)
    resources = data.get('resources', {}) if isinstance(data, dict) else None
    if not isinstance(resources, dict):
        raise ValueError(f"{path} must hold a JSON object with a 'resources' object")
    state = {}
    for key, entry in resources.items():
        if not isinstance(entry, dict) or entry.get('type') not in VARIANTS or not entry.get('id'):
            logger.error('Ignoring malformed state entry %s: %s', key, json.dumps(entry))
            continue
        state[key] = entry
    return state


def save_state(path, state):
    """Write the managed memberships, replacing the previous state file atomically."""
    temp_path = path + '.tmp'
    with open(temp_path, 'w', encoding='utf-8') as handle:
        json.dump({'resources': state}, handle, indent=4, sort_keys=True)
    os.replace(temp_path, path)
    logger.debug('State saved to %s.', path)


def state_entry(variant, result):
    if result.drift:
        return None
    return {
        'type': variant.resource_type,
        'id': result.identifier,
        'fields': result.fields.as_dict()
    }


def reconcile_resource(reconciler, desired, entry):
    """
    Bring one declared membership to its desired state.

    Parameters:
        reconciler (GroupMembershipReconciler): Reconciler for the resource type.
        desired (DesiredResource): Declared resource.
        entry (dict | None): Its current state entry, None when not managed yet.

    Returns:
        dict | None: The new state entry, None if the resource ended up absent.

    Raises:
        SyncError: If any API call fails.
    """
    if entry is None and desired.import_id:
        result = reconciler.import_state(desired.import_id)
        if result.drift:
            logger.error(
                    'Cannot import %s: group of %s does not exist. Creating it instead.',
                    desired.key,
                    desired.import_id
                    )
    elif entry is None:
        logger.info('Creating %s %s.', desired.variant.resource_type, desired.key)
        return state_entry(desired.variant, reconciler.create(desired.fields))
    else:
        result = reconciler.read(entry['id'])
        if result.drift:
            logger.warning('Resource %s drifted, creating it again.', desired.key)

    if result.drift:
        try:
            result = reconciler.create(desired.fields)
        except SyncError as sync_error:
            # the old membership is gone, only the declaration is left
            logger.error('Failed to create %s again: %s', desired.key, sync_error)
            return None
    else:
        result = reconciler.update(result.fields, desired.fields, result.identifier)
    return state_entry(desired.variant, result)


def delete_resource(client, key, entry, **options):
    """
    Remove a managed membership that is no longer declared.

    A membership whose group was already deleted by another client is absent
    as it is, and no set-group is sent for it.
    """
    variant = VARIANTS[entry['type']]
    reconciler = GroupMembershipReconciler(client, variant, **options)
    if reconciler.read(entry['id']).drift:
        logger.warning('Group of %s is already gone, dropping it.', key)
        return
    current = GroupMembership.from_dict(entry['fields']) if entry.get('fields') else None
    logger.info('Deleting %s %s.', variant.resource_type, key)
    reconciler.delete(entry['id'], current)


def sync_memberships(client, desired_resources, state, ignore_warnings=False, ignore_errors=False):
    """
    Reconcile every declared membership and delete the ones no longer declared.

    Errors are logged per resource and do not stop the run; a failed resource
    keeps its previous state entry so the next run retries it, unless its
    group turned out to be deleted already.

    Parameters:
        client: Group store (see cp_mgmt_client.CpMgmtClient).
        desired_resources (list[DesiredResource]): Declared memberships.
        state (dict): Current state entries by key.

    Returns:
        dict: The new state entries by key.
    """
    options = {'ignore_warnings': ignore_warnings, 'ignore_errors': ignore_errors}
    new_state = {}
    desired_keys = set()
    for desired in desired_resources:
        desired_keys.add(desired.key)
        entry = state.get(desired.key)
        if entry is not None and entry['type'] != desired.variant.resource_type:
            logger.info(
                    'Resource %s changed type from %s to %s.',
                    desired.key,
                    entry['type'],
                    desired.variant.resource_type
                    )
            try:
                delete_resource(client, desired.key, entry, **options)
            except SyncError as sync_error:
                logger.error('Failed to delete %s: %s', desired.key, sync_error)
                new_state[desired.key] = entry
                continue
            entry = None
        reconciler = GroupMembershipReconciler(client, desired.variant, **options)
        try:
            new_entry = reconcile_resource(reconciler, desired, entry)
        except SyncError as sync_error:
            logger.error('Failed to reconcile %s: %s', desired.key, sync_error)
            if entry is not None:
                new_state[desired.key] = entry
            continue
        if new_entry is not None:
            new_state[desired.key] = new_entry

    for key, entry in state.items():
        if key in desired_keys:
            continue
        try:
            delete_resource(client, key, entry, **options)
        except SyncError as sync_error:
            logger.error('Failed to delete %s: %s', key, sync_error)
            new_state[key] = entry
    return new_state


def publish_changes(client):
    """
    Publish the session if it holds changes, discarding it when publishing fails.

    Returns:
        bool: True if something was published.
    """
    session = client.show_session()
    if session.get('changes', 0) == 0:
        logger.info('No changes to publish.')
        return False
    try:
        client.publish()
    except SyncError:
        logger.error('Publish failed, discarding %s changes.', session['changes'])
        client.discard()
        raise
    return True


def main():
    configure_logging()
    acquire_lock()
    client = None
    try:
        desired_resources = load_desired_state(DESIRED_STATE_FILE)
        state = load_state(STATE_FILE)

        client = CpMgmtClient(
            user,
            password,
            url,
            domain_name,
            api_wait_time=api_wait_time,
            read_only=False,
            verify=verify_ssl,
            timeout=api_timeout,
            publish_wait_time=publish_wait_time,
            publish_max_polls=publish_max_polls
        )
        client.login()

        logger.info('Syncing %s declared memberships to the firewall.', len(desired_resources))
        new_state = sync_memberships(
            client,
            desired_resources,
            state,
            ignore_warnings=ignore_warnings,
            ignore_errors=ignore_errors
        )
        publish_changes(client)
        save_state(STATE_FILE, new_state)

    except SyncError as sync_error:
        logger.error(f"Membership sync failed: {sync_error}")
    except (OSError, ValueError) as file_error:
        logger.error(f"Could not read or write the membership files: {file_error}")

    finally:
        if client is not None:
            try:
                client.logout()
            except SyncError as logout_error:
                logger.error(f"Logout failed: {logout_error}")
        release_lock()
        if ENABLE_EMAIL_REPORTING:
            send_error_email(error_handler.errors)


if __name__ == "__main__":
    main()
