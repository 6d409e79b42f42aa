#!/usr/bin/python3
# -*- coding: utf-8 -*-
"""
Typed views over the group payloads exchanged with the Check Point Web API.

The management server speaks loosely typed JSON mappings. This module decodes
them into small immutable structures, failing fast when a required field is
missing or has the wrong type, and renders set-group requests back into the
hyphenated wire format.

It also holds the composite identifier codec used to link a local resource to
the remote group (and member) it manages:

    "<group uid>/<member uid>"              single member resources
    "<group uid>/network_object_members"    member set resources
"""
from dataclasses import dataclass

from sync_errors import InvalidIdentifier, PayloadError

ID_SEPARATOR = '/'
MEMBERS_SET_SUFFIX = 'network_object_members'
OBJECT_NOT_FOUND_CODE = 'generic_err_object_not_found'

KIND_SINGLE = 'single'
KIND_SET = 'set'


def is_object_not_found(code) -> bool:
    """
    Tell whether an API error code means the requested object does not exist.

    Parameters:
        code (str | None): The 'code' field of a failed API response.

    Returns:
        bool: True for the management server's "object not found" code.
    """
    return code == OBJECT_NOT_FOUND_CODE


def _require_str(data, key, context):
    value = data.get(key)
    if not isinstance(value, str):
        raise PayloadError(f"{context}: field '{key}' missing or not a string ({value!r})")
    return value


def _optional_str(data, key, context):
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise PayloadError(f"{context}: field '{key}' is not a string ({value!r})")
    return value


def _optional_list(data, key, context):
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise PayloadError(f"{context}: field '{key}' is not a list ({value!r})")
    return value


@dataclass(frozen=True)
class MemberRef:
    """A reference from a group to one of its members."""
    uid: str
    name: str
    type: str = None

    @classmethod
    def from_api(cls, data):
        if not isinstance(data, dict):
            raise PayloadError(f"group member is not an object ({data!r})")
        return cls(
                uid=_require_str(data, 'uid', 'group member'),
                name=_require_str(data, 'name', 'group member'),
                type=_optional_str(data, 'type', 'group member')
                )


@dataclass(frozen=True)
class GroupSnapshot:
    """
    The authoritative state of a group as returned by show-group or set-group.

    Attributes:
        uid (str): Stable group identifier.
        name (str): Group name, unique but mutable.
        members (tuple[MemberRef]): Members in server order (semantically a set).
        tags (frozenset[str]): Tag names.
        comments (str | None): Free text comments.
        color (str | None): Object color.
    """
    uid: str
    name: str
    members: tuple = ()
    tags: frozenset = frozenset()
    comments: str = None
    color: str = None

    @classmethod
    def from_api(cls, data):
        """
        Decode a group mapping returned by the Web API.

        Tags may come back as full objects ({'name', 'uid'}) or as plain names,
        depending on the details level of the call. Both are accepted.

        Raises:
            PayloadError: If 'uid' or 'name' is missing, or a field has the wrong type.
        """
        if not isinstance(data, dict):
            raise PayloadError(f"group payload is not an object ({data!r})")
        members = tuple(MemberRef.from_api(member) for member in _optional_list(data, 'members', 'group'))
        tags = []
        for tag in _optional_list(data, 'tags', 'group'):
            if isinstance(tag, str):
                tags.append(tag)
            elif isinstance(tag, dict):
                tags.append(_require_str(tag, 'name', 'group tag'))
            else:
                raise PayloadError(f"group tag is neither a name nor an object ({tag!r})")
        return cls(
                uid=_require_str(data, 'uid', 'group'),
                name=_require_str(data, 'name', 'group'),
                members=members,
                tags=frozenset(tags),
                comments=_optional_str(data, 'comments', 'group'),
                color=_optional_str(data, 'color', 'group')
                )

    def member_names(self):
        return frozenset(member.name for member in self.members)

    def find_member_by_uid(self, uid):
        for member in self.members:
            if member.uid == uid:
                return member
        return None


def set_field_delta(old_values, new_values):
    """
    Render the change of a list-valued group field (members, tags) for set-group.

    The Web API has no "set to empty" primitive, only full replacement or
    add/remove deltas. A non-empty new value is sent as a full replacement; an
    empty one becomes a removal of every previously held value.

    Parameters:
        old_values (Iterable[str]): Values currently held by the group.
        new_values (Iterable[str]): Desired values.

    Returns:
        list[str] | dict: Sorted replacement list, or {'remove': [...]}.
    """
    new_values = sorted(set(new_values))
    if new_values:
        return new_values
    return {'remove': sorted(set(old_values))}


@dataclass
class UpsertGroupRequest:
    """
    A set-group request.

    The group is addressed by `uid` when given, otherwise by `name`.
    `members` and `tags` are passed through as-is: a name, a list of names
    (replacement) or an {'add': ..., 'remove': ...} mapping.
    """
    name: str = None
    uid: str = None
    new_name: str = None
    members: object = None
    tags: object = None
    comments: str = None
    color: str = None
    ignore_warnings: bool = False
    ignore_errors: bool = False

    def to_payload(self):
        """
        Build the JSON mapping sent to the Web API.

        Raises:
            PayloadError: If the request identifies no group.
        """
        payload = {}
        if self.uid:
            payload['uid'] = self.uid
        elif self.name:
            payload['name'] = self.name
        else:
            raise PayloadError('set-group request needs a group name or uid')
        if self.new_name is not None:
            payload['new-name'] = self.new_name
        if self.members is not None:
            payload['members'] = self.members
        if self.tags is not None:
            payload['tags'] = self.tags
        if self.comments is not None:
            payload['comments'] = self.comments
        if self.color is not None:
            payload['color'] = self.color
        if self.ignore_warnings:
            payload['ignore-warnings'] = True
        if self.ignore_errors:
            payload['ignore-errors'] = True
        return payload

    def is_mutation(self):
        """True when the request changes anything besides identifying the group."""
        return any(value is not None for value in (
            self.new_name, self.members, self.tags, self.comments, self.color
            ))


@dataclass(frozen=True)
class CompositeId:
    """
    The durable link between a local resource and its remote group.

    A `member_uid` of None marks a member set resource; its textual form uses
    the constant MEMBERS_SET_SUFFIX in place of a member uid.
    """
    group_uid: str
    member_uid: str = None

    @property
    def kind(self):
        return KIND_SET if self.member_uid is None else KIND_SINGLE

    def format(self):
        """
        Render the identifier string.

        Raises:
            InvalidIdentifier: If a component is empty, contains the separator,
                or a member uid collides with the member set suffix.
        """
        for label, value in (('group uid', self.group_uid), ('member uid', self.member_uid)):
            if value is None and label == 'member uid':
                continue
            if not value:
                raise InvalidIdentifier(f'{label} is empty')
            if ID_SEPARATOR in value:
                raise InvalidIdentifier(f"{label} '{value}' contains '{ID_SEPARATOR}'")
        if self.member_uid == MEMBERS_SET_SUFFIX:
            raise InvalidIdentifier(f"member uid '{self.member_uid}' is reserved")
        suffix = MEMBERS_SET_SUFFIX if self.member_uid is None else self.member_uid
        return f'{self.group_uid}{ID_SEPARATOR}{suffix}'

    def __str__(self):
        return self.format()

    @classmethod
    def parse(cls, text):
        """
        Split an identifier string back into its group and member components.

        Raises:
            InvalidIdentifier: Unless the text holds exactly one separator
                between two non-empty parts.
        """
        if not isinstance(text, str):
            raise InvalidIdentifier(f'identifier is not a string ({text!r})')
        parts = text.split(ID_SEPARATOR)
        if len(parts) != 2 or not all(parts):
            raise InvalidIdentifier(
                    f"identifier '{text}' is not of the form '<group uid>{ID_SEPARATOR}<member uid>'"
                    )
        group_uid, member_part = parts
        if member_part == MEMBERS_SET_SUFFIX:
            return cls(group_uid=group_uid)
        return cls(group_uid=group_uid, member_uid=member_part)
