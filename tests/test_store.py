from models import Channel, ChatState, ErrorInfo, Message, MessageStatus
from store import (
    AddMessage, ConfirmMessage, CreateChannel, PrependMessages, ResetUnread, SetChannels,
    SetCurrentChannel, SetError, SetLoading, SetMessages, Store, UpdateMessage, reduce, sort_channels,
)

A = "0x" + "a" * 40
B = "0x" + "b" * 40
C = "0x" + "c" * 40


def chan(cid, last=0):
    return Channel(id=cid, name=cid, createdBy="0x" + "1" * 40, participants=[cid], lastMessageAt=last)


def msg(mid, ts, sender=A):
    return Message(id=mid, sender=sender, content=mid, timestamp=ts)


def ids(items):
    return [i.id for i in items]


def test_sort_channels_newest_first():
    assert ids(sort_channels([chan(A, 100), chan(B, 200)])) == [B, A]


def test_sort_channels_keeps_prior_order_on_ties():
    assert ids(sort_channels([chan(C, 5), chan(A, 5), chan(B, 9)])) == [B, C, A]


def test_set_channels_replaces_list():
    state = reduce(ChatState(channels=[chan(C)]), SetChannels([chan(B, 200), chan(A, 100)]))
    assert ids(state.channels) == [B, A]


def test_set_current_channel_does_not_touch_unread():
    state = ChatState(unreadCount={A: 3})
    state = reduce(state, SetCurrentChannel(A))
    assert state.currentChannelId == A
    assert state.unreadCount[A] == 3
    assert reduce(state, ResetUnread(A)).unreadCount[A] == 0


def test_add_message_appends_and_resorts_channels():
    state = ChatState(channels=[chan(B, 200), chan(A, 100)])
    state = reduce(state, AddMessage(A, msg("m1", 300)))
    assert ids(state.messages[A]) == ["m1"]
    assert ids(state.channels) == [A, B]
    assert state.channels[0].lastMessageAt == 300


def test_add_message_keeps_tie_order():
    state = ChatState(channels=[chan(B, 300), chan(C, 100), chan(A, 50)])
    state = reduce(state, AddMessage(A, msg("m1", 300)))
    assert ids(state.channels) == [B, A, C]


def test_add_message_counts_unread_only_off_current_channel():
    state = ChatState(channels=[chan(A), chan(B)], currentChannelId=B)
    state = reduce(state, AddMessage(A, msg("m1", 1), unread=True))
    state = reduce(state, AddMessage(B, msg("m2", 2), unread=True))
    state = reduce(state, AddMessage(A, msg("m3", 3), unread=False))
    assert state.unreadCount == {A: 1}


def test_add_message_list_stays_chronological():
    state = ChatState(channels=[chan(A)])
    for i, ts in enumerate([1, 5, 5, 9, 12]):
        state = reduce(state, AddMessage(A, msg(f"m{i}", ts)))
    stamps = [m.timestamp for m in state.messages[A]]
    assert stamps == sorted(stamps)
    assert ids(state.messages[A]) == ["m0", "m1", "m2", "m3", "m4"]


def test_set_messages_replaces_one_channel():
    state = ChatState(messages={A: [msg("old", 1)], B: [msg("b", 2)]})
    state = reduce(state, SetMessages(A, [msg("n1", 3), msg("n2", 4)]))
    assert ids(state.messages[A]) == ["n1", "n2"]
    assert ids(state.messages[B]) == ["b"]


def test_prepend_messages_skips_known_ids():
    state = ChatState(messages={A: [msg("m3", 30), msg("m4", 40)]})
    state = reduce(state, PrependMessages(A, [msg("m1", 10), msg("m2", 20), msg("m3", 30)]))
    assert ids(state.messages[A]) == ["m1", "m2", "m3", "m4"]


def test_prepend_nothing_new_returns_same_state():
    state = ChatState(messages={A: [msg("m1", 10)]})
    assert reduce(state, PrependMessages(A, [msg("m1", 10)])) is state


def test_update_message_merges_fields():
    state = ChatState(messages={A: [msg("m1", 1), msg("m2", 2)]})
    state = reduce(state, UpdateMessage(A, "m2", {"status": MessageStatus.READ, "editedContent": "x"}))
    updated = state.messages[A][1]
    assert updated.status is MessageStatus.READ
    assert updated.editedContent == "x"
    assert updated.content == "m2"
    assert state.messages[A][0].status is None


def test_update_message_without_list_is_noop():
    state = ChatState()
    assert reduce(state, UpdateMessage(A, "m1", {"deleted": True})) is state


def test_set_messages_raises_channel_to_newest_and_resorts():
    state = ChatState(channels=[chan(B, 40), chan(A, 30)])
    state = reduce(state, SetMessages(A, [msg("m1", 10), msg("m5", 50)]))
    assert ids(state.channels) == [A, B]
    assert state.channels[0].lastMessageAt == 50

    # an older page never moves a channel backwards
    state = reduce(state, SetMessages(A, [msg("m1", 10)]))
    assert state.channels[0].lastMessageAt == 50


def test_confirm_message_moves_to_transport_time():
    placeholder = msg("local-1", 9_999_999, sender=C)
    state = ChatState(channels=[chan(A, 0)])
    state = reduce(state, AddMessage(A, msg("m1", 100)))
    state = reduce(state, AddMessage(A, placeholder))
    state = reduce(state, AddMessage(A, msg("m2", 300)))
    assert state.channels[0].lastMessageAt == 9_999_999

    confirmed = msg("sent-1", 200, sender=C).model_copy(update={"status": MessageStatus.SENT})
    state = reduce(state, ConfirmMessage(A, "local-1", confirmed))

    assert ids(state.messages[A]) == ["m1", "sent-1", "m2"]
    assert state.messages[A][1].status is MessageStatus.SENT
    assert state.channels[0].lastMessageAt == 300


def test_confirm_message_drops_placeholder_when_already_folded():
    state = ChatState(channels=[chan(A, 0)])
    state = reduce(state, AddMessage(A, msg("local-1", 9_999_999, sender=C)))
    state = reduce(state, AddMessage(A, msg("sent-1", 200, sender=C)))

    state = reduce(state, ConfirmMessage(A, "local-1", msg("sent-1", 200, sender=C)))

    assert ids(state.messages[A]) == ["sent-1"]
    assert state.channels[0].lastMessageAt == 200


def test_create_channel_is_idempotent():
    state = ChatState(channels=[chan(A, 100)])
    state = reduce(state, CreateChannel(chan(B, 200)))
    assert ids(state.channels) == [B, A]
    again = reduce(state, CreateChannel(chan(B, 999)))
    assert again is state


def test_loading_and_errors():
    state = reduce(ChatState(), SetLoading("messages", True))
    assert state.loading.messages is True
    assert state.loading.channels is False

    err = ErrorInfo(code="transport_error", message="down")
    state = reduce(state, SetError(err))
    assert state.error == err
    state = reduce(state, SetError(err, channel_id=A))
    assert state.channelErrors[A] == err
    state = reduce(state, SetError(None, channel_id=A))
    assert A not in state.channelErrors
    assert state.error == err


def test_unknown_action_leaves_state():
    state = ChatState()
    assert reduce(state, object()) is state


def test_store_notifies_listeners_until_unsubscribed():
    store = Store()
    seen = []
    unsubscribe = store.subscribe(lambda state, action: seen.append(type(action).__name__))
    store.dispatch(CreateChannel(chan(A)))
    unsubscribe()
    store.dispatch(CreateChannel(chan(B)))
    assert seen == ["CreateChannel"]
    assert ids(store.state.channels) == [A, B]
    assert store.channel(B).id == B
    assert store.channel(C) is None


def test_store_survives_failing_listener():
    store = Store()

    def boom(state, action):
        raise RuntimeError("listener bug")

    store.subscribe(boom)
    store.dispatch(AddMessage(A, msg("m1", 1)))
    assert ids(store.messages_for(A)) == ["m1"]
