import asyncio
import unittest

from groupchat.client.api import RemoteError
from groupchat.client.store import ConvergenceStore
from groupchat.server.events import Event
from groupchat.server.models import Group, Message, User


def _group(gid, members=('me', 'bob'), name=None):
    return Group(id=gid, name=name or gid, creator_id='bob', admin_ids={'bob'},
                 member_ids=set(members), created_ts=1, updated_ts=1)


def _dm(mid, sender, receiver, ts=1):
    return Message(id=mid, sender_id=sender, receiver_id=receiver, created_ts=ts, text=mid)


def _group_msg(mid, gid, sender='bob', ts=1):
    return Message(id=mid, sender_id=sender, group_id=gid, created_ts=ts, text=mid)


class FakeApi:
    """Stands in for ChatClient; canned results, optional failures."""

    def __init__(self):
        self.user_id = 'me'
        self.groups = []
        self.history = {}
        self.fail = None
        self.gates = {}

    def _check(self):
        if self.fail:
            raise RemoteError(self.fail, "rejected")

    async def list_groups(self):
        self._check()
        return list(self.groups)

    async def list_users(self):
        return []

    async def search_users(self, query):
        self._check()
        return [User(id='bob', display_name='Bob')] if query in 'bob' else []

    async def list_online(self):
        return ['bob']

    async def get_messages(self, target_id):
        self._check()
        gate = self.gates.get(target_id)
        if gate is not None:
            await gate.wait()
        return list(self.history.get(target_id, []))

    async def send_message(self, target_id, text=None, image=None):
        self._check()
        if any(g.id == target_id for g in self.groups):
            return _group_msg('sent', target_id, sender='me')
        return _dm('sent', 'me', target_id)

    async def edit_message(self, message_id, text):
        self._check()
        message = _dm(message_id, 'me', 'bob')
        message.text = text
        message.edited = True
        return message

    async def delete_message(self, message_id):
        self._check()

    async def create_group(self, name, member_ids, avatar=None):
        self._check()
        return _group('new', members=('me', *member_ids), name=name)

    async def leave_group(self, group_id):
        self._check()


class TestConvergenceStore(unittest.TestCase):
    def setUp(self):
        self.api = FakeApi()
        self.notices = []
        self.store = ConvergenceStore(self.api, notify=self.notices.append)

    def open_group(self, gid='g1', history=()):
        self.api.groups = [_group(gid), _group('g2')]
        self.api.history[gid] = list(history)

        async def call():
            await self.store.load_groups()
            await self.store.select(gid, is_group=True)

        asyncio.run(call())

    def test_group_update_for_inactive_group_leaves_selection(self):
        self.open_group(history=[_group_msg('m1', 'g1')])
        self.store.apply(Event.group_updated(_group('g2', members=('me', 'bob', 'carol'), name='renamed')))

        self.assertEqual(self.store.selection.target_id, 'g1')
        self.assertEqual(self.store.find_group('g2').name, 'renamed')
        self.assertEqual([m.id for m in self.store.messages], ['m1'])

    def test_group_update_for_active_group_updates_in_place(self):
        self.open_group(history=[_group_msg('m1', 'g1')])
        self.store.apply(Event.group_updated(_group('g1', members=('me', 'bob', 'carol'), name='new')))

        self.assertEqual(self.store.selection.group.name, 'new')
        self.assertIn('carol', self.store.selection.group.member_ids)
        self.assertEqual([m.id for m in self.store.messages], ['m1'])

    def test_group_update_for_unknown_group_is_added(self):
        self.store.apply(Event.group_updated(_group('fresh')))
        self.assertIsNotNone(self.store.find_group('fresh'))

    def test_group_update_without_me_drops_group(self):
        self.open_group()
        self.store.apply(Event.group_updated(_group('g1', members=('bob', 'carol'))))
        self.assertIsNone(self.store.find_group('g1'))
        self.assertIsNone(self.store.selection)

    def test_removed_from_active_group_clears_selection(self):
        self.open_group(history=[_group_msg('m1', 'g1')])
        self.store.apply(Event.removed_from_group(_group('g1', members=('bob',))))
        self.assertIsNone(self.store.selection)
        self.assertEqual(self.store.messages, [])
        self.assertIsNone(self.store.find_group('g1'))
        self.assertIsNotNone(self.store.find_group('g2'))

    def test_left_inactive_group_keeps_selection(self):
        self.open_group()
        self.store.apply(Event.left_group(_group('g2', members=('bob',))))
        self.assertEqual(self.store.selection.target_id, 'g1')
        self.assertIsNone(self.store.find_group('g2'))

    def test_new_message_only_for_active_conversation(self):
        self.open_group()
        self.store.apply(Event.new_message(_group_msg('in', 'g1')))
        self.store.apply(Event.new_message(_group_msg('other', 'g2')))
        self.store.apply(Event.new_message(_dm('dm', 'bob', 'me')))
        self.store.apply(Event.new_message(_group_msg('in', 'g1')))
        self.assertEqual([m.id for m in self.store.messages], ['in'])

    def test_direct_conversation_filters_by_pair(self):
        asyncio.run(self.store.select('bob', is_group=False))
        self.store.apply(Event.new_message(_dm('from-bob', 'bob', 'me')))
        self.store.apply(Event.new_message(_dm('from-carol', 'carol', 'me')))
        self.store.apply(Event.new_message(_group_msg('group', 'bob')))
        self.assertEqual([m.id for m in self.store.messages], ['from-bob'])

    def test_edit_and_delete_events(self):
        asyncio.run(self.store.select('bob', is_group=False))
        self.store.apply(Event.new_message(_dm('m1', 'bob', 'me')))
        edited = _dm('m1', 'bob', 'me')
        edited.text = 'fixed'
        edited.edited = True
        self.store.apply(Event.message_edited(edited))
        self.assertEqual(self.store.messages[0].text, 'fixed')

        self.store.apply(Event.message_deleted(_dm('unknown', 'bob', 'me')))
        self.assertEqual(len(self.store.messages), 1)
        self.store.apply(Event.message_deleted(edited))
        self.assertEqual(self.store.messages, [])

    def test_online_users(self):
        self.store.apply(Event.online_users(['me', 'bob']))
        self.assertEqual(self.store.online, {'me', 'bob'})

    def test_search_users_leaves_cached_users(self):
        async def call():
            found = await self.store.search_users('bo')
            missing = await self.store.search_users('zed')
            self.api.fail = 'upstream_failure'
            failed = await self.store.search_users('bo')
            return found, missing, failed

        found, missing, failed = asyncio.run(call())
        self.assertEqual([u.id for u in found], ['bob'])
        self.assertEqual(missing, [])
        self.assertEqual(failed, [])
        self.assertEqual(self.store.users, [])
        self.assertEqual([n.code for n in self.notices], ['upstream_failure'])

    def test_send_appends_confirmed_message_once(self):
        async def call():
            await self.store.select('bob', is_group=False)
            await self.store.send(text='hi')
            # an echo of the same message must not duplicate it
            self.store.apply(Event.new_message(_dm('sent', 'me', 'bob')))

        asyncio.run(call())
        self.assertEqual([m.id for m in self.store.messages], ['sent'])

    def test_own_group_message_echo_is_not_duplicated(self):
        self.open_group(history=[_group_msg('m1', 'g1')])
        asyncio.run(self.store.send(text='hi team'))
        self.store.apply(Event.new_message(_group_msg('sent', 'g1', sender='me')))
        self.assertEqual([m.id for m in self.store.messages], ['m1', 'sent'])

    def test_failed_actions_notify_and_change_nothing(self):
        self.open_group(history=[_group_msg('m1', 'g1')])
        self.api.fail = 'forbidden'

        async def call():
            self.assertIsNone(await self.store.send(text='hi'))
            self.assertFalse(await self.store.delete('m1'))
            self.assertFalse(await self.store.leave_group('g1'))
            self.assertIsNone(await self.store.create_group('x', ['bob']))

        asyncio.run(call())
        self.assertEqual([n.code for n in self.notices], ['forbidden'] * 4)
        self.assertEqual([m.id for m in self.store.messages], ['m1'])
        self.assertEqual({g.id for g in self.store.groups}, {'g1', 'g2'})
        self.assertEqual(self.store.selection.target_id, 'g1')

    def test_successful_actions_apply_responses(self):
        self.open_group(history=[_group_msg('m1', 'g1', sender='me')])

        async def call():
            await self.store.create_group('team', ['bob'])
            await self.store.delete('m1')
            await self.store.leave_group('g1')

        asyncio.run(call())
        self.assertIsNotNone(self.store.find_group('new'))
        self.assertIsNone(self.store.find_group('g1'))
        self.assertIsNone(self.store.selection)

    def test_stale_history_response_is_discarded(self):
        self.api.history['slow'] = [_dm('old', 'slow', 'me')]
        self.api.history['bob'] = [_dm('m1', 'bob', 'me')]

        async def call():
            gate = asyncio.Event()
            self.api.gates['slow'] = gate
            slow = asyncio.ensure_future(self.store.select('slow', is_group=False))
            await asyncio.sleep(0)
            fast = await self.store.select('bob', is_group=False)
            gate.set()
            return await slow, fast

        slow_loaded, fast_loaded = asyncio.run(call())
        self.assertFalse(slow_loaded)
        self.assertTrue(fast_loaded)
        self.assertEqual(self.store.selection.target_id, 'bob')
        self.assertEqual([m.id for m in self.store.messages], ['m1'])

    def test_events_during_history_fetch_are_kept(self):
        self.api.history['bob'] = [_dm('m1', 'bob', 'me', ts=1), _dm('m3', 'bob', 'me', ts=3)]

        async def call():
            gate = asyncio.Event()
            self.api.gates['bob'] = gate
            pending = asyncio.ensure_future(self.store.select('bob', is_group=False))
            await asyncio.sleep(0)
            # saved after the server took its history snapshot
            self.store.apply(Event.new_message(_dm('m2', 'me', 'bob', ts=2)))
            self.store.apply(Event.new_message(_dm('m4', 'bob', 'me', ts=4)))
            self.store.apply(Event.message_deleted(_dm('m3', 'bob', 'me', ts=3)))
            gate.set()
            return await pending

        self.assertTrue(asyncio.run(call()))
        self.assertEqual([m.id for m in self.store.messages], ['m1', 'm2', 'm4'])

    def test_history_fetch_does_not_duplicate_messages_it_already_has(self):
        self.api.history['bob'] = [_dm('m1', 'bob', 'me', ts=1)]

        async def call():
            gate = asyncio.Event()
            self.api.gates['bob'] = gate
            pending = asyncio.ensure_future(self.store.select('bob', is_group=False))
            await asyncio.sleep(0)
            self.store.apply(Event.new_message(_dm('m1', 'bob', 'me', ts=1)))
            gate.set()
            return await pending

        asyncio.run(call())
        self.assertEqual([m.id for m in self.store.messages], ['m1'])


if __name__ == '__main__':
    unittest.main()
