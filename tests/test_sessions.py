from workspace_rag.sessions.store import Conversation, ConversationStore


def test_sequence_numbers_are_assigned_and_unique():
    conversation = Conversation("s1")

    turns = [conversation.append("user", f"message {n}") for n in range(5)]

    assert [t.seq for t in turns] == [1, 2, 3, 4, 5]


def test_history_returns_recent_turns_in_order():
    conversation = Conversation("s1")
    for n in range(5):
        conversation.append("user", f"message {n}")

    assert [t.text for t in conversation.history(2)] == ["message 3", "message 4"]
    assert len(conversation.history()) == 5
    assert conversation.history(0) == []


def test_history_is_a_copy():
    conversation = Conversation("s1")
    conversation.append("user", "hello")

    conversation.history().clear()

    assert len(conversation) == 1


def test_reset_discards_turns_without_reusing_sequence_numbers():
    conversation = Conversation("s1")
    conversation.append("user", "before")

    conversation.reset()
    turn = conversation.append("user", "after")

    assert len(conversation) == 1
    assert turn.seq == 2


def test_store_creates_conversations_lazily():
    store = ConversationStore()

    assert not store.has_session("s1")
    first = store.get("s1")
    assert store.get("s1") is first
    assert len(store) == 1


def test_store_reset_only_affects_one_session():
    store = ConversationStore()
    store.get("a").append("user", "hello a")
    store.get("b").append("user", "hello b")

    store.reset("a")

    assert len(store.get("a")) == 0
    assert len(store.get("b")) == 1
