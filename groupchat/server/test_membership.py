import asyncio
import os
import shutil
import tempfile
import unittest

from groupchat.server.dispatcher import Dispatcher
from groupchat.server.errors import (
    AlreadyMember,
    CannotRemoveCreator,
    Conflict,
    CreatorCannotLeave,
    EmptyMembership,
    Forbidden,
    InvalidInput,
    InvalidMember,
    InvalidMembers,
    NotFound,
    NotMember,
    UpstreamFailure,
)
from groupchat.server.events import EventKind
from groupchat.server.hub import Connection, ConnectionRegistry
from groupchat.server.media import UploadError
from groupchat.server.membership import Action, MembershipEngine, authorize
from groupchat.server.models import Group, User
from groupchat.server.repo import GroupsRepo, UsersRepo

PNG_URI = "data:image/png;base64,iVBORw0KGgo="


class FakeUploader:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def upload(self, data_uri, folder, max_width, max_height):
        self.calls.append((folder, max_width, max_height))
        if self.fail:
            raise UploadError("blob store unavailable")
        return f"https://cdn.test/{folder}/{len(self.calls)}.png"


def kinds(conn, kind):
    return [e for e in conn.drain() if e.kind == kind]


class TestMembershipEngine(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.users = UsersRepo(os.path.join(self.temp_dir, "users.jsonl"))
        self.groups = GroupsRepo(os.path.join(self.temp_dir, "groups.jsonl"))
        for uid in ('alice', 'bob', 'carol', 'dave', 'erin'):
            self.users.append_user(User(id=uid, display_name=uid.title()))
        self.registry = ConnectionRegistry()
        self.uploader = FakeUploader()
        self.engine = MembershipEngine(self.users, self.groups, Dispatcher(self.registry), self.uploader)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def connect(self, *user_ids):
        conns = {}
        for uid in user_ids:
            conns[uid] = Connection(uid)
            await self.registry.register(uid, conns[uid])
        return conns

    async def make_group(self):
        """alice creates; bob is promoted to admin directly in storage."""
        group = await self.engine.create('alice', 'Team', ['bob', 'carol', 'dave'])
        stored = self.groups.find_by_id(group.id)
        stored.admin_ids.add('bob')
        return self.groups.save(stored)

    def run_async(self, coro):
        return asyncio.run(coro)

    # create

    def test_create_adds_creator_as_member_and_admin(self):
        group = self.run_async(self.engine.create('alice', ' Team ', ['bob', 'bob', 'alice', 'carol']))
        self.assertEqual(group.name, 'Team')
        self.assertEqual(group.creator_id, 'alice')
        self.assertEqual(group.member_ids, {'alice', 'bob', 'carol'})
        self.assertEqual(group.admin_ids, {'alice'})
        self.assertEqual(self.groups.find_by_id(group.id), group)

    def test_create_requires_another_member(self):
        with self.assertRaises(EmptyMembership):
            self.run_async(self.engine.create('alice', 'Solo', ['alice']))
        with self.assertRaises(EmptyMembership):
            self.run_async(self.engine.create('alice', 'Solo', []))
        self.assertEqual(self.groups.find_by_member_id('alice'), [])

    def test_create_rejects_unknown_members(self):
        with self.assertRaises(InvalidMembers):
            self.run_async(self.engine.create('alice', 'Team', ['bob', 'ghost']))
        self.assertEqual(self.groups.find_by_member_id('bob'), [])

    def test_create_rejects_blank_name(self):
        with self.assertRaises(InvalidInput):
            self.run_async(self.engine.create('alice', '   ', ['bob']))

    def test_create_uploads_avatar_before_persisting(self):
        group = self.run_async(self.engine.create('alice', 'Team', ['bob'], avatar=PNG_URI))
        self.assertTrue(group.avatar.startswith('https://cdn.test/chat_app/groups/'))
        self.assertEqual(self.uploader.calls, [('chat_app/groups', 400, 400)])

    def test_create_aborts_when_upload_fails(self):
        self.engine.uploader = FakeUploader(fail=True)
        with self.assertRaises(UpstreamFailure):
            self.run_async(self.engine.create('alice', 'Team', ['bob'], avatar=PNG_URI))
        self.assertEqual(self.groups.find_by_member_id('alice'), [])

    def test_create_rejects_non_image_avatar_without_uploading(self):
        with self.assertRaises(InvalidInput):
            self.run_async(self.engine.create('alice', 'Team', ['bob'], avatar='data:text/plain;base64,aGk='))
        self.assertEqual(self.uploader.calls, [])

    def test_create_notifies_other_members(self):
        async def call():
            conns = await self.connect('alice', 'bob')
            await self.engine.create('alice', 'Team', ['bob', 'carol'])
            return conns

        conns = self.run_async(call())
        self.assertEqual(len(kinds(conns['bob'], EventKind.GROUP_UPDATED)), 1)
        self.assertEqual(kinds(conns['alice'], EventKind.GROUP_UPDATED), [])

    # authorize

    def test_authorize_capabilities(self):
        group = Group(id='g', name='g', creator_id='c', admin_ids={'a'}, member_ids={'c', 'a', 'm'}, created_ts=1)
        for action in (Action.ADD_MEMBER, Action.REMOVE_MEMBER, Action.UPDATE_GROUP):
            self.assertTrue(authorize(group, 'c', action))
            self.assertTrue(authorize(group, 'a', action))
            self.assertFalse(authorize(group, 'm', action))
            self.assertFalse(authorize(group, 'x', action))
        self.assertTrue(authorize(group, 'c', Action.REMOVE_ADMIN))
        self.assertFalse(authorize(group, 'a', Action.REMOVE_ADMIN))
        for action in (Action.READ_MESSAGES, Action.SEND_MESSAGE, Action.LEAVE):
            self.assertTrue(authorize(group, 'm', action))
            self.assertFalse(authorize(group, 'x', action))

    # add

    def test_add_member_broadcasts_to_online_members_only(self):
        async def call():
            group = await self.make_group()
            # online: alice, carol, erin (the new member); offline: bob, dave
            conns = await self.connect('alice', 'carol', 'erin')
            updated = await self.engine.add_member(group.id, 'alice', 'erin')
            return updated, conns

        updated, conns = self.run_async(call())
        self.assertIn('erin', updated.member_ids)
        for uid in ('alice', 'carol', 'erin'):
            events = kinds(conns[uid], EventKind.GROUP_UPDATED)
            self.assertEqual(len(events), 1)
            self.assertIn('erin', events[0].payload['member_ids'])

    def test_add_member_by_admin(self):
        async def call():
            group = await self.make_group()
            return await self.engine.add_member(group.id, 'bob', 'erin')

        self.assertIn('erin', self.run_async(call()).member_ids)

    def test_add_member_forbidden_for_plain_member(self):
        async def call():
            group = await self.make_group()
            with self.assertRaises(Forbidden):
                await self.engine.add_member(group.id, 'carol', 'erin')
            return group

        group = self.run_async(call())
        self.assertEqual(self.groups.find_by_id(group.id), group)

    def test_add_existing_member_conflicts_and_never_duplicates(self):
        async def call():
            group = await self.make_group()
            conns = await self.connect('alice', 'bob')
            with self.assertRaises(AlreadyMember) as ctx:
                await self.engine.add_member(group.id, 'alice', 'carol')
            return group, conns, ctx.exception

        group, conns, error = self.run_async(call())
        self.assertIsInstance(error, Conflict)
        self.assertEqual(self.groups.find_by_id(group.id), group)
        self.assertEqual(conns['alice'].drain(), [])
        self.assertEqual(conns['bob'].drain(), [])

    def test_add_unknown_user(self):
        async def call():
            group = await self.make_group()
            with self.assertRaises(InvalidMember):
                await self.engine.add_member(group.id, 'alice', 'ghost')

        self.run_async(call())

    def test_missing_group(self):
        with self.assertRaises(NotFound):
            self.run_async(self.engine.add_member('nope', 'alice', 'erin'))
        with self.assertRaises(NotFound):
            self.run_async(self.engine.leave('nope', 'alice'))

    # remove

    def test_remove_member_notifies_removed_user_once_and_remaining_members(self):
        async def call():
            group = await self.make_group()
            conns = await self.connect('alice', 'bob', 'dave')  # carol offline
            await self.engine.remove_member(group.id, 'alice', 'dave')
            # a later change must not reach dave any more
            await self.engine.update(group.id, 'alice', name='Renamed')
            return conns

        conns = self.run_async(call())
        dave_events = conns['dave'].drain()
        self.assertEqual([e.kind for e in dave_events], [EventKind.REMOVED_FROM_GROUP])
        for uid in ('alice', 'bob'):
            events = kinds(conns[uid], EventKind.GROUP_UPDATED)
            self.assertEqual(len(events), 2)
            self.assertNotIn('dave', events[0].payload['member_ids'])

    def test_remove_drops_admin_role(self):
        async def call():
            group = await self.make_group()
            return await self.engine.remove_member(group.id, 'alice', 'bob')

        updated = self.run_async(call())
        self.assertNotIn('bob', updated.member_ids)
        self.assertNotIn('bob', updated.admin_ids)
        self.assertLessEqual(updated.admin_ids, updated.member_ids)

    def test_creator_cannot_be_removed(self):
        async def call():
            group = await self.make_group()
            for actor in ('alice', 'bob'):
                with self.assertRaises(CannotRemoveCreator):
                    await self.engine.remove_member(group.id, actor, 'alice')
            return group

        group = self.run_async(call())
        stored = self.groups.find_by_id(group.id)
        self.assertEqual(stored, group)
        self.assertIn('alice', stored.member_ids)

    def test_admin_cannot_remove_admin(self):
        async def call():
            group = await self.make_group()
            stored = self.groups.find_by_id(group.id)
            stored.admin_ids.add('carol')
            group = self.groups.save(stored)
            with self.assertRaises(Forbidden):
                await self.engine.remove_member(group.id, 'bob', 'carol')
            return group

        group = self.run_async(call())
        self.assertEqual(self.groups.find_by_id(group.id), group)

    def test_creator_can_remove_admin(self):
        async def call():
            group = await self.make_group()
            return await self.engine.remove_member(group.id, 'alice', 'bob')

        self.assertNotIn('bob', self.run_async(call()).member_ids)

    def test_plain_member_cannot_remove(self):
        async def call():
            group = await self.make_group()
            with self.assertRaises(Forbidden):
                await self.engine.remove_member(group.id, 'carol', 'dave')

        self.run_async(call())

    def test_remove_non_member(self):
        async def call():
            group = await self.make_group()
            with self.assertRaises(NotMember):
                await self.engine.remove_member(group.id, 'alice', 'erin')

        self.run_async(call())

    # leave

    def test_leave_notifies_leaver_and_remaining_members(self):
        async def call():
            group = await self.make_group()
            conns = await self.connect('alice', 'carol')
            await self.engine.leave(group.id, 'carol')
            return group, conns

        group, conns = self.run_async(call())
        self.assertEqual([e.kind for e in conns['carol'].drain()], [EventKind.LEFT_GROUP])
        self.assertEqual(len(kinds(conns['alice'], EventKind.GROUP_UPDATED)), 1)
        self.assertNotIn('carol', self.groups.find_by_id(group.id).member_ids)

    def test_creator_cannot_leave(self):
        async def call():
            group = await self.make_group()
            with self.assertRaises(CreatorCannotLeave):
                await self.engine.leave(group.id, 'alice')
            return group

        group = self.run_async(call())
        self.assertEqual(self.groups.find_by_id(group.id), group)

    def test_non_member_cannot_leave(self):
        async def call():
            group = await self.make_group()
            with self.assertRaises(NotMember):
                await self.engine.leave(group.id, 'erin')

        self.run_async(call())

    # update

    def test_update_is_partial(self):
        async def call():
            group = await self.engine.create('alice', 'Team', ['bob'], avatar=PNG_URI)
            renamed = await self.engine.update(group.id, 'alice', name='New name')
            return group, renamed

        group, renamed = self.run_async(call())
        self.assertEqual(renamed.name, 'New name')
        self.assertEqual(renamed.avatar, group.avatar)

    def test_update_forbidden_for_plain_member(self):
        async def call():
            group = await self.make_group()
            with self.assertRaises(Forbidden):
                await self.engine.update(group.id, 'carol', name='Mine')
            return group

        group = self.run_async(call())
        self.assertEqual(self.groups.find_by_id(group.id).name, 'Team')

    def test_update_upload_failure_saves_nothing(self):
        async def call():
            group = await self.make_group()
            self.engine.uploader = FakeUploader(fail=True)
            with self.assertRaises(UpstreamFailure):
                await self.engine.update(group.id, 'alice', name='Other', avatar=PNG_URI)
            return group

        group = self.run_async(call())
        self.assertEqual(self.groups.find_by_id(group.id), group)

    def test_list_groups(self):
        async def call():
            g1 = await self.engine.create('alice', 'One', ['bob'])
            g2 = await self.engine.create('carol', 'Two', ['bob'])
            await self.engine.create('carol', 'Three', ['dave'])
            return g1, g2

        g1, g2 = self.run_async(call())
        ids = {g.id for g in self.engine.list_groups('bob')}
        self.assertEqual(ids, {g1.id, g2.id})


if __name__ == '__main__':
    unittest.main()
