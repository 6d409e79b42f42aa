#!/usr/bin/python3
# -*- coding: utf-8 -*-
"""
Minimal Check Point management Web API client.

Wraps the handful of Web API commands the membership tooling relies on:

    • login / logout / show-session / publish / discard / show-task
    • set-group / show-group / delete-group (the group store contract)

Every command is a POST to https://<server>/web_api/<command> with a JSON body
and the session id in the X-chkp-sid header. A call that reaches the server
always yields an ApiResponse, successful or not; only calls that cannot be
completed (connection errors, timeouts, non-JSON answers) raise TransportError.

Note:
    SSL certificate verification is disabled by default (verify=False), as
    management servers commonly run with self-signed certificates. Enable it
    when the server certificate can be validated.
"""
import json
import logging
import time
from dataclasses import dataclass, field

import requests
import urllib3
from urllib3.exceptions import InsecureRequestWarning

from sync_errors import TransportError, UpstreamRejected

logger = logging.getLogger('membership_sync')

SESSION_HEADER = 'X-chkp-sid'


@dataclass
class ApiResponse:
    """
    Outcome of a Web API call that reached the management server.

    Attributes:
        success (bool): True for a 2xx answer.
        data (dict): Decoded JSON body (error bodies carry 'code' and 'message').
        error_msg (str): Human readable failure reason, empty on success.
        status_code (int): HTTP status code.
    """
    success: bool
    data: dict = field(default_factory=dict)
    error_msg: str = ''
    status_code: int = 200

    @property
    def code(self):
        return self.data.get('code') if isinstance(self.data, dict) else None


def build_error_message(data):
    """
    Compose the failure reason of an error body.

    The top level 'message' is followed by the messages of any 'errors',
    'blocking-errors' and 'warnings' entries, which is where set-group reports
    validation problems.
    """
    if not isinstance(data, dict):
        return ''
    messages = []
    if data.get('message'):
        messages.append(str(data['message']))
    for key in ('blocking-errors', 'errors', 'warnings'):
        for entry in data.get(key) or []:
            if isinstance(entry, dict) and entry.get('message'):
                messages.append(str(entry['message']))
            elif isinstance(entry, str):
                messages.append(entry)
    return ' '.join(messages)


class CpMgmtClient:
    """
    Session bound client for one management server (and optionally one domain).

    Parameters:
        user (str): API user name.
        password (str): API user password.
        url (str): Management server address (host or host:port).
        domain_name (str): Domain to log into, empty outside multi-domain setups.
        api_wait_time (float): Seconds to wait before each call.
        read_only (bool): Open a read-only session.
        verify (bool): Verify the server certificate.
        timeout (float): Per request timeout in seconds.
        publish_wait_time (float): Seconds between publish task polls.
        publish_max_polls (int): Polls of the publish task before giving up.
    """
    def __init__(self, user, password, url, domain_name='', api_wait_time=0,
                 read_only=False, verify=False, timeout=60, publish_wait_time=1,
                 publish_max_polls=120):
        self.user = user
        self.password = password
        self.base_url = f'https://{url}/web_api/'
        self.domain_name = domain_name
        self.api_wait_time = api_wait_time
        self.read_only = read_only
        self.verify = verify
        self.timeout = timeout
        self.publish_wait_time = publish_wait_time
        self.publish_max_polls = publish_max_polls
        self.sid = None
        self.http = requests.Session()
        self.http.headers.update({'Content-Type': 'application/json'})
        if not verify:
            urllib3.disable_warnings(InsecureRequestWarning)

    def api_call(self, command, payload=None) -> ApiResponse:
        """
        Run a Web API command.

        Parameters:
            command (str): Command name, e.g. 'show-group'.
            payload (dict | None): JSON body.

        Returns:
            ApiResponse: success flag, decoded body and error message.

        Raises:
            TransportError: If the server could not be reached or answered
                with something other than JSON.
        """
        if self.api_wait_time:
            time.sleep(self.api_wait_time)
        headers = {}
        if self.sid:
            headers[SESSION_HEADER] = self.sid
        logger.debug('Calling %s with %s', command, json.dumps(payload or {}, indent=4))
        try:
            response = self.http.post(
                    self.base_url + command,
                    json=payload or {},
                    headers=headers,
                    verify=self.verify,
                    timeout=self.timeout
                    )
        except requests.exceptions.Timeout as timeout_err:
            raise TransportError(f'Timeout calling {command}: {timeout_err}') from timeout_err
        except requests.exceptions.ConnectionError as conn_err:
            raise TransportError(f'Connection error calling {command}: {conn_err}') from conn_err
        except requests.exceptions.RequestException as req_err:
            raise TransportError(f'An error occurred calling {command}: {req_err}') from req_err
        try:
            data = response.json()
        except ValueError as json_err:
            raise TransportError(
                    f'Failed to decode JSON response of {command} '
                    f'(status {response.status_code}): {response.text}'
                    ) from json_err
        if not isinstance(data, dict):
            data = {'data': data}
        if response.ok:
            return ApiResponse(success=True, data=data, status_code=response.status_code)
        error_msg = build_error_message(data) or f'{command} failed with status {response.status_code}'
        logger.debug('%s failed: %s', command, error_msg)
        return ApiResponse(success=False, data=data, error_msg=error_msg, status_code=response.status_code)

    def _checked_call(self, command, payload=None):
        result = self.api_call(command, payload)
        if not result.success:
            raise UpstreamRejected(result.error_msg, command=command, code=result.code)
        return result.data

    def login(self):
        """
        Open a Web API session and remember its session id.

        Raises:
            UpstreamRejected: If the server refuses the credentials.
            TransportError: If the server cannot be reached.
        """
        payload = {'user': self.user, 'password': self.password}
        if self.domain_name:
            payload['domain'] = self.domain_name
        if self.read_only:
            payload['read-only'] = True
        logger.debug('Logging in to %s as %s', self.base_url, self.user)
        data = self._checked_call('login', payload)
        if 'sid' not in data:
            raise UpstreamRejected("login answer carries no 'sid'", command='login')
        self.sid = data['sid']
        logger.info('Logged in to %s.', self.base_url)
        return data

    def logout(self):
        if not self.sid:
            return None
        result = self.api_call('logout')
        self.sid = None
        return result

    def show_session(self):
        return self._checked_call('show-session')

    def set_group(self, payload) -> ApiResponse:
        return self.api_call('set-group', payload)

    def show_group(self, uid=None, name=None) -> ApiResponse:
        payload = {'uid': uid} if uid else {'name': name}
        return self.api_call('show-group', payload)

    def delete_group(self, uid) -> ApiResponse:
        return self.api_call('delete-group', {'uid': uid})

    def discard(self):
        return self._checked_call('discard')

    def publish(self):
        """
        Publish the session changes and wait for the publish task to finish.

        Raises:
            UpstreamRejected: If the publish is refused, its task does not succeed,
                or it is still in progress after `publish_max_polls` polls.
        """
        data = self._checked_call('publish')
        task_id = data.get('task-id')
        if not task_id:
            return data
        for poll in range(1, self.publish_max_polls + 1):
            task = self._checked_call('show-task', {'task-id': task_id})
            tasks = task.get('tasks') or [{}]
            status = tasks[0].get('status')
            if status != 'in progress':
                break
            logger.debug('Publish task %s still in progress (poll %s).', task_id, poll)
            if poll < self.publish_max_polls:
                time.sleep(self.publish_wait_time)
        else:
            raise UpstreamRejected(
                    f'Publish task {task_id} still in progress after {self.publish_max_polls} polls',
                    command='publish'
                    )
        if status != 'succeeded':
            raise UpstreamRejected(f'Publish task {task_id} ended with status {status}', command='publish')
        logger.info('Session published.')
        return tasks[0]
