"""
Test configuration and fixtures for the membership sync tests.

Provides an in-memory stand-in for the management server group commands.
"""

import os
import sys
import pytest

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cp_mgmt_client import ApiResponse  # noqa: E402
from group_payloads import OBJECT_NOT_FOUND_CODE  # noqa: E402


class FakeGroupStore:
    """
    In-memory group store speaking the set-group / show-group / delete-group contract.

    Every call is recorded in `calls` as (command, payload).
    """

    def __init__(self):
        self.objects = {}
        self.groups = {}
        self.calls = []
        self._counter = 0

    def _new_uid(self, prefix):
        self._counter += 1
        return f'{prefix}-{self._counter}'

    def add_object(self, name, object_type='host'):
        uid = self._new_uid('obj')
        self.objects[uid] = {'uid': uid, 'name': name, 'type': object_type}
        return uid

    def add_group(self, name, members=(), tags=(), comments='', color='black'):
        uid = self._new_uid('grp')
        self.groups[uid] = {
            'uid': uid,
            'name': name,
            'members': [self._object_uid(member) for member in members],
            'tags': list(tags),
            'comments': comments,
            'color': color,
        }
        return uid

    def _object_uid(self, reference):
        if reference in self.objects:
            return reference
        for uid, obj in self.objects.items():
            if obj['name'] == reference:
                return uid
        return None

    def _find_group(self, payload):
        if 'uid' in payload:
            return self.groups.get(payload['uid'])
        for group in self.groups.values():
            if group['name'] == payload.get('name'):
                return group
        return None

    def group_data(self, group):
        return {
            'uid': group['uid'],
            'name': group['name'],
            'type': 'group',
            'members': [dict(self.objects[uid]) for uid in group['members']],
            'tags': [{'uid': f'tag-{tag}', 'name': tag} for tag in group['tags']],
            'comments': group['comments'],
            'color': group['color'],
        }

    @staticmethod
    def not_found(reference):
        message = f'Requested object [{reference}] not found'
        return ApiResponse(
                success=False,
                data={'code': OBJECT_NOT_FOUND_CODE, 'message': message},
                error_msg=message,
                status_code=404
                )

    @staticmethod
    def _as_list(value):
        return [value] if isinstance(value, str) else list(value)

    def _apply_members(self, group, value):
        if isinstance(value, dict):
            for reference in self._as_list(value.get('add', [])):
                uid = self._object_uid(reference)
                if uid is None:
                    return self.not_found(reference)
                if uid not in group['members']:
                    group['members'].append(uid)
            for reference in self._as_list(value.get('remove', [])):
                uid = self._object_uid(reference)
                if uid in group['members']:
                    group['members'].remove(uid)
            return None
        members = []
        for reference in self._as_list(value):
            uid = self._object_uid(reference)
            if uid is None:
                return self.not_found(reference)
            members.append(uid)
        group['members'] = members
        return None

    @classmethod
    def _apply_tags(cls, group, value):
        if isinstance(value, dict):
            for tag in cls._as_list(value.get('add', [])):
                if tag not in group['tags']:
                    group['tags'].append(tag)
            for tag in cls._as_list(value.get('remove', [])):
                if tag in group['tags']:
                    group['tags'].remove(tag)
        else:
            group['tags'] = cls._as_list(value)

    def set_group(self, payload):
        self.calls.append(('set-group', payload))
        group = self._find_group(payload)
        if group is None:
            return self.not_found(payload.get('uid') or payload.get('name'))
        if 'members' in payload:
            failure = self._apply_members(group, payload['members'])
            if failure is not None:
                return failure
        if 'tags' in payload:
            self._apply_tags(group, payload['tags'])
        if 'new-name' in payload:
            group['name'] = payload['new-name']
        for key in ('comments', 'color'):
            if key in payload:
                group[key] = payload[key]
        return ApiResponse(success=True, data=self.group_data(group))

    def show_group(self, uid=None, name=None):
        payload = {'uid': uid} if uid else {'name': name}
        self.calls.append(('show-group', payload))
        group = self._find_group(payload)
        if group is None:
            return self.not_found(uid or name)
        return ApiResponse(success=True, data=self.group_data(group))

    def delete_group(self, uid):
        self.calls.append(('delete-group', {'uid': uid}))
        if self.groups.pop(uid, None) is None:
            return self.not_found(uid)
        return ApiResponse(success=True, data={'message': 'OK'})

    def mutating_calls(self):
        return [call for call in self.calls if call[0] in ('set-group', 'delete-group')]

    def member_names(self, group_uid):
        return {self.objects[uid]['name'] for uid in self.groups[group_uid]['members']}


@pytest.fixture
def store():
    """Return an empty in-memory group store."""
    return FakeGroupStore()


@pytest.fixture
def populated_store(store):
    """Return a store with a few network objects, a service and a group."""
    store.add_object('host_10.0.0.1')
    store.add_object('host_10.0.0.2')
    store.add_object('net_10.1.0.0_24', object_type='network')
    store.add_object('tcp_8080', object_type='service-tcp')
    store.add_group('group-DMZ', members=['host_10.0.0.2'], tags=['SOC'], comments='dmz', color='red')
    return store
