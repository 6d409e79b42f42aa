#!/usr/bin/python3
# -*- coding: utf-8 -*-
"""
Group membership reconciliation against a Check Point management server.

A membership resource declares that a group contains a member (or a set of
members). The reconciler converges the remote group towards that declaration
through set-group and show-group calls, and derives the composite identifier
linking the local resource to the remote objects.

Three resource shapes are supported, all driven by the same algorithm:

    group_member           one member, any object type, identified by name
    group_network_member   one member, network objects only
    group_members          the whole member set of a group, plus its tags,
                           comments and color

Lifecycle of a resource:

    absent --create--> present --update*--> present --delete--> absent
    present --read finds the group gone (drift)--> absent

All calls are synchronous and strictly ordered. Nothing is retried here: a
failed call raises immediately and the caller decides what to do. Managing the
same remote group from two resources at once is not serialized by this module.
"""
import json
import logging
from dataclasses import dataclass

from group_payloads import (
    KIND_SET,
    KIND_SINGLE,
    CompositeId,
    GroupSnapshot,
    UpsertGroupRequest,
    is_object_not_found,
    set_field_delta,
)
from sync_errors import AmbiguousOrMissingMember, InvalidIdentifier, UpstreamRejected, ValidationError

logger = logging.getLogger('membership_sync')

NETWORK_OBJECT_TYPES = frozenset([
    'host',
    'network',
    'address-range',
    'multicast-address-range',
    'group',
    'group-with-exclusion',
    'dns-domain',
    'dynamic-object',
    'security-zone',
    'wildcard',
    'updatable-object',
    'checkpoint-host',
    'simple-gateway',
    'simple-cluster',
    'CpmiGatewayCluster',
    'CpmiHostCkp',
])


@dataclass(frozen=True)
class MembershipVariant:
    """
    The shape of a membership resource.

    Attributes:
        resource_type (str): Name used in desired state files.
        multi (bool): True when the resource owns the whole member set.
        member_types (frozenset | None): Object types accepted as members,
            None for any type.
    """
    resource_type: str
    multi: bool = False
    member_types: frozenset = None

    def accepts(self, member):
        # Members without a reported type are given the benefit of the doubt.
        if self.member_types is None or member.type is None:
            return True
        return member.type in self.member_types


GROUP_MEMBER = MembershipVariant('group_member')
GROUP_NETWORK_MEMBER = MembershipVariant('group_network_member', member_types=NETWORK_OBJECT_TYPES)
GROUP_MEMBERS = MembershipVariant('group_members', multi=True)

VARIANTS = {variant.resource_type: variant for variant in (GROUP_MEMBER, GROUP_NETWORK_MEMBER, GROUP_MEMBERS)}


@dataclass(frozen=True)
class GroupMembership:
    """
    Local field values of a membership resource.

    Single member resources use `name` and `member`; member set resources use
    `name`, `members`, `comments`, `color` and `tags`. A `comments`, `color`
    or `tags` of None is not managed; an empty `tags` removes every tag.
    """
    name: str
    member: str = None
    members: frozenset = frozenset()
    comments: str = None
    color: str = None
    tags: frozenset = None

    def __post_init__(self):
        object.__setattr__(self, 'members', frozenset(self.members or ()))
        if self.tags is not None:
            object.__setattr__(self, 'tags', frozenset(self.tags))

    def as_dict(self):
        data = {'name': self.name}
        if self.member is not None:
            data['member'] = self.member
        if self.members:
            data['members'] = sorted(self.members)
        if self.comments is not None:
            data['comments'] = self.comments
        if self.color is not None:
            data['color'] = self.color
        if self.tags is not None:
            data['tags'] = sorted(self.tags)
        return data

    @classmethod
    def from_dict(cls, data):
        """
        Build field values from a plain mapping (desired or saved state).

        Raises:
            ValidationError: If the mapping carries no usable group name or a
                list field is not a list.
        """
        if not isinstance(data, dict) or not isinstance(data.get('name'), str):
            raise ValidationError(f"membership needs a 'name' string ({data!r})")
        for key in ('members', 'tags'):
            if data.get(key) is not None and not isinstance(data[key], list):
                raise ValidationError(f"membership field '{key}' must be a list ({data[key]!r})")
        return cls(
                name=data['name'],
                member=data.get('member'),
                members=data.get('members') or (),
                comments=data.get('comments'),
                color=data.get('color'),
                tags=data.get('tags')
                )


@dataclass(frozen=True)
class MembershipResult:
    """
    Outcome of a lifecycle operation.

    A drifted result has no identifier and no fields: the remote group is
    gone and the resource must be created again.
    """
    identifier: str = None
    fields: GroupMembership = None
    drift: bool = False


class GroupMembershipReconciler:
    """
    Create, read, update, delete and import one kind of membership resource.

    Parameters:
        store: Group store exposing set_group(payload) and show_group(uid=...),
            each returning an object with success, data, error_msg and code
            (see cp_mgmt_client.CpMgmtClient).
        variant (MembershipVariant): Resource shape handled.
        ignore_warnings (bool): Send 'ignore-warnings' with every set-group.
        ignore_errors (bool): Send 'ignore-errors' with every set-group.
    """
    def __init__(self, store, variant, ignore_warnings=False, ignore_errors=False):
        self.store = store
        self.variant = variant
        self.ignore_warnings = ignore_warnings
        self.ignore_errors = ignore_errors

    def _request(self, **fields):
        return UpsertGroupRequest(
                ignore_warnings=self.ignore_warnings,
                ignore_errors=self.ignore_errors,
                **fields
                )

    def _set_group(self, request):
        payload = request.to_payload()
        logger.info('%s: set-group %s', self.variant.resource_type, json.dumps(payload, indent=4))
        result = self.store.set_group(payload)
        if not result.success:
            raise UpstreamRejected(result.error_msg or 'set-group failed', command='set-group', code=result.code)
        return result

    def _parse(self, identifier):
        composite_id = CompositeId.parse(identifier)
        expected = KIND_SET if self.variant.multi else KIND_SINGLE
        if composite_id.kind != expected:
            raise InvalidIdentifier(
                    f"identifier '{identifier}' does not belong to a {self.variant.resource_type} resource"
                    )
        return composite_id

    def validate(self, desired):
        """
        Check a desired state before creating it.

        Raises:
            ValidationError: On an empty group name, an empty member name, or
                an empty member set.
        """
        if not desired.name:
            raise ValidationError(f'{self.variant.resource_type}: group name is required')
        if self.variant.multi:
            if not desired.members or not all(desired.members):
                raise ValidationError(f'{self.variant.resource_type}: at least one member name is required')
        elif not desired.member:
            raise ValidationError(f'{self.variant.resource_type}: member name is required')

    def _resolve_new_member(self, snapshot, member_name):
        """
        Find the member just added to a group in the set-group response.

        The response lists every member of the group, pre-existing ones
        included, so the new member is located by name and never by position.
        """
        if not snapshot.members:
            raise AmbiguousOrMissingMember('No members in the set-group response')
        named = [member for member in snapshot.members if member.name == member_name]
        matches = [member for member in named if self.variant.accepts(member)]
        if not matches:
            if named:
                raise AmbiguousOrMissingMember(
                        f"Member {member_name} of group {snapshot.name} is a {named[0].type}, "
                        f"not an object accepted by {self.variant.resource_type}"
                        )
            raise AmbiguousOrMissingMember(f'New member {member_name} not found in the set-group response')
        if len(matches) > 1:
            raise AmbiguousOrMissingMember(
                    f'Member name {member_name} matches {len(matches)} members of group {snapshot.name}'
                    )
        return matches[0]

    def create(self, desired):
        """
        Add the desired membership to the remote group.

        Parameters:
            desired (GroupMembership): Desired field values.

        Returns:
            MembershipResult: The new identifier and the fields read back.

        Raises:
            ValidationError: If the desired state is incomplete.
            UpstreamRejected: If set-group fails.
            AmbiguousOrMissingMember: If the new member cannot be told apart in
                the response. The member stays added remotely.
            TransportError: If the server cannot be reached.
        """
        self.validate(desired)
        if self.variant.multi:
            request = self._request(
                    name=desired.name,
                    members=sorted(desired.members),
                    tags=sorted(desired.tags) if desired.tags else None,
                    comments=desired.comments,
                    color=desired.color
                    )
        else:
            request = self._request(name=desired.name, members={'add': desired.member})
        result = self._set_group(request)
        snapshot = GroupSnapshot.from_api(result.data)

        if self.variant.multi:
            if desired.tags is not None and not desired.tags and snapshot.tags:
                # set-group cannot replace tags with an empty list
                self._set_group(self._request(uid=snapshot.uid, tags={'remove': sorted(snapshot.tags)}))
            composite_id = CompositeId(group_uid=snapshot.uid)
        else:
            member = self._resolve_new_member(snapshot, desired.member)
            composite_id = CompositeId(group_uid=snapshot.uid, member_uid=member.uid)
        identifier = composite_id.format()
        logger.info('Created %s %s.', self.variant.resource_type, identifier)
        return self.read(identifier)

    def read(self, identifier):
        """
        Refresh the local fields from the remote group.

        Returns:
            MembershipResult: Current fields, or a drift result when the group
                no longer exists. Drift is not an error.

        Raises:
            InvalidIdentifier: If the identifier cannot be parsed.
            UpstreamRejected: If show-group fails for another reason.
            TransportError: If the server cannot be reached.
        """
        composite_id = self._parse(identifier)
        result = self.store.show_group(uid=composite_id.group_uid)
        if not result.success:
            if is_object_not_found(result.code):
                logger.warning(
                        'Group %s of %s %s was deleted outside of this tool.',
                        composite_id.group_uid,
                        self.variant.resource_type,
                        identifier
                        )
                return MembershipResult(drift=True)
            raise UpstreamRejected(result.error_msg or 'show-group failed', command='show-group', code=result.code)
        snapshot = GroupSnapshot.from_api(result.data)

        if self.variant.multi:
            fields = GroupMembership(
                    name=snapshot.name,
                    members=snapshot.member_names(),
                    comments=snapshot.comments,
                    color=snapshot.color,
                    tags=snapshot.tags
                    )
        else:
            member = snapshot.find_member_by_uid(composite_id.member_uid)
            if member is None:
                logger.warning(
                        'Member %s is no longer part of group %s.',
                        composite_id.member_uid,
                        snapshot.name
                        )
            fields = GroupMembership(name=snapshot.name, member=member.name if member else '')
        return MembershipResult(identifier=composite_id.format(), fields=fields)

    def import_state(self, identifier):
        """Adopt an existing membership given its composite identifier."""
        logger.info('Importing %s %s.', self.variant.resource_type, identifier)
        return self.read(identifier)

    def _update_request(self, old, new):
        request = self._request(name=old.name)
        if new.name != old.name:
            request.new_name = new.name
        if self.variant.multi:
            if new.members != old.members:
                request.members = set_field_delta(old.members, new.members)
            if new.tags is not None and new.tags != old.tags:
                request.tags = set_field_delta(old.tags or (), new.tags)
            if new.comments is not None and new.comments != old.comments:
                request.comments = new.comments
            if new.color is not None and new.color != old.color:
                request.color = new.color
        return request

    def _remove_members(self, group_uid, members):
        self._set_group(self._request(uid=group_uid, members={'remove': members}))

    def update(self, old, new, identifier):
        """
        Converge the remote group from `old` to `new`.

        Single member resources whose member changed are deleted and created
        again; if the removal fails nothing is recreated. A rename alone is
        applied in place, since the group uid survives it. Member set
        resources apply every change with a single set-group.

        Returns:
            MembershipResult: Possibly a new identifier, and the fields read back.

        Raises:
            UpstreamRejected, AmbiguousOrMissingMember, ValidationError,
            InvalidIdentifier, TransportError: As for create and read.
        """
        composite_id = self._parse(identifier)
        if old == new:
            return self.read(identifier)

        if not self.variant.multi and new.member != old.member:
            self.validate(new)
            if old.member:
                logger.info(
                        'Replacing member %s of group %s with %s.',
                        old.member,
                        old.name,
                        new.member
                        )
                self._remove_members(composite_id.group_uid, composite_id.member_uid)
            else:
                logger.info('Member of %s is already gone, adding %s.', identifier, new.member)
            return self.create(new)

        request = self._update_request(old, new)
        if request.is_mutation():
            self._set_group(request)
        return self.read(identifier)

    def delete(self, identifier, current=None):
        """
        Remove the membership from the remote group.

        The group itself is left in place. Member set resources remove every
        member tracked in `current`.

        Raises:
            UpstreamRejected: If set-group fails; the caller keeps its state.
            InvalidIdentifier, TransportError: As for read.
        """
        composite_id = self._parse(identifier)
        if self.variant.multi:
            members = sorted(current.members) if current is not None else []
            if not members:
                logger.warning('No tracked members to remove for %s.', identifier)
                return
            self._remove_members(composite_id.group_uid, members)
        else:
            self._remove_members(composite_id.group_uid, composite_id.member_uid)
        logger.info('Deleted %s %s.', self.variant.resource_type, identifier)
