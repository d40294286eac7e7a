"""Tests for the REST surface (conversations and messages routers)."""
import pytest


@pytest.fixture
def alice(auth_headers):
    return auth_headers("alice")


@pytest.fixture
def bob(auth_headers):
    return auth_headers("bob")


@pytest.fixture
def conversation_id(api_client, alice):
    response = api_client.get("/conversations/user/bob", headers=alice)
    assert response.status_code == 200
    return response.json()["conversation"]["id"]


def send(api_client, headers, conversation_id, content, **extra):
    response = api_client.post(
        "/messages",
        json={"conversationId": conversation_id, "content": content, **extra},
        headers=headers,
    )
    assert response.status_code == 201, response.json()
    return response.json()["messageData"]


class TestConversationsAPI:
    def test_direct_conversation_is_singleton(self, api_client, alice, bob, conversation_id):
        again = api_client.get("/conversations/user/bob", headers=alice).json()
        from_bob = api_client.get("/conversations/user/alice", headers=bob).json()

        assert again["conversation"]["id"] == conversation_id
        assert from_bob["conversation"]["id"] == conversation_id

    def test_conversation_with_self_rejected(self, api_client, alice):
        response = api_client.get("/conversations/user/alice", headers=alice)
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_request"

    def test_create_direct_is_idempotent(self, api_client, alice):
        first = api_client.post(
            "/conversations", json={"type": "direct", "participants": ["bob"]}, headers=alice
        )
        second = api_client.post(
            "/conversations", json={"type": "direct", "participants": ["bob"]}, headers=alice
        )

        assert first.status_code == 201
        assert second.status_code == 200
        assert first.json()["conversation"]["id"] == second.json()["conversation"]["id"]

    def test_create_group(self, api_client, alice):
        response = api_client.post(
            "/conversations",
            json={"type": "group", "participants": ["bob", "carol"], "name": "Team"},
            headers=alice,
        )

        assert response.status_code == 201
        group = response.json()["conversation"]
        assert group["type"] == "group"
        assert [p["userId"] for p in group["participants"]] == ["alice", "bob", "carol"]

    def test_group_without_name_rejected(self, api_client, alice):
        response = api_client.post(
            "/conversations", json={"type": "group", "participants": ["bob"]}, headers=alice
        )
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_request"

    def test_get_conversation_participant_only(self, api_client, auth_headers, alice, conversation_id):
        assert api_client.get(f"/conversations/{conversation_id}", headers=alice).status_code == 200

        outsider = api_client.get(
            f"/conversations/{conversation_id}", headers=auth_headers("mallory")
        )
        assert outsider.status_code == 403
        assert outsider.json()["code"] == "forbidden"

    def test_unknown_conversation(self, api_client, alice):
        response = api_client.get("/conversations/does-not-exist", headers=alice)
        assert response.status_code == 404
        assert response.json() == {"error": "Conversation not found", "code": "not_found"}

    def test_list_includes_unread_count(self, api_client, alice, bob, conversation_id):
        send(api_client, alice, conversation_id, "one")
        send(api_client, alice, conversation_id, "two")

        body = api_client.get("/conversations?page=1&limit=10", headers=bob).json()

        assert body["total"] == 1
        assert body["hasMore"] is False
        assert body["conversations"][0]["id"] == conversation_id
        assert body["conversations"][0]["unreadCount"] == 2


class TestGroupManagementAPI:
    @pytest.fixture
    def group_id(self, api_client, alice):
        response = api_client.post(
            "/conversations",
            json={"type": "group", "participants": ["bob"], "name": "Team"},
            headers=alice,
        )
        return response.json()["conversation"]["id"]

    def test_admin_updates_group(self, api_client, alice, group_id):
        response = api_client.put(
            f"/conversations/{group_id}",
            json={"name": "Renamed", "avatar": "https://img/team.png"},
            headers=alice,
        )

        assert response.status_code == 200
        conversation = response.json()["conversation"]
        assert conversation["name"] == "Renamed"
        assert conversation["avatar"] == "https://img/team.png"

    def test_member_update_forbidden(self, api_client, bob, group_id):
        response = api_client.put(f"/conversations/{group_id}", json={"name": "Mine"}, headers=bob)

        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"

    def test_add_and_remove_participant(self, api_client, alice, auth_headers, group_id):
        added = api_client.post(
            f"/conversations/{group_id}/participants", json={"userId": "carol"}, headers=alice
        )
        assert added.status_code == 200
        assert [p["userId"] for p in added.json()["conversation"]["participants"]] == [
            "alice", "bob", "carol",
        ]

        removed = api_client.delete(f"/conversations/{group_id}/participants/carol", headers=alice)
        assert removed.status_code == 200
        carol = removed.json()["conversation"]["participants"][-1]
        assert (carol["userId"], carol["isActive"]) == ("carol", False)

        # Carol's token no longer opens the conversation.
        outsider = api_client.get(f"/conversations/{group_id}", headers=auth_headers("carol"))
        assert outsider.status_code == 403

    def test_adding_existing_member_conflicts(self, api_client, alice, group_id):
        response = api_client.post(
            f"/conversations/{group_id}/participants", json={"userId": "bob"}, headers=alice
        )
        assert response.status_code == 409
        assert response.json()["code"] == "conflict"

    def test_member_cannot_remove_others(self, api_client, bob, group_id):
        response = api_client.delete(f"/conversations/{group_id}/participants/alice", headers=bob)
        assert response.status_code == 403

    def test_removed_member_cannot_send(self, api_client, alice, bob, group_id):
        api_client.delete(f"/conversations/{group_id}/participants/bob", headers=alice)

        response = api_client.post(
            "/messages", json={"conversationId": group_id, "content": "hello?"}, headers=bob
        )
        assert response.status_code == 403

    def test_leave_group(self, api_client, alice, bob, group_id):
        response = api_client.delete(f"/conversations/{group_id}", headers=bob)

        assert response.status_code == 200
        assert response.json()["conversationId"] == group_id
        assert api_client.get("/conversations", headers=bob).json()["total"] == 0
        assert api_client.get("/conversations", headers=alice).json()["total"] == 1

    def test_leave_direct_rejected(self, api_client, alice, conversation_id):
        response = api_client.delete(f"/conversations/{conversation_id}", headers=alice)
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_request"


class TestMessagesAPI:
    def test_send_by_recipient(self, api_client, alice):
        response = api_client.post(
            "/messages", json={"recipientId": "carol", "content": "hey"}, headers=alice
        )

        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "Message sent"
        assert body["messageData"]["senderId"] == "alice"
        assert body["messageData"]["readBy"] == [
            {"userId": "carol", "isRead": False, "readAt": None}
        ]

    def test_send_needs_exactly_one_target(self, api_client, alice):
        response = api_client.post("/messages", json={"content": "lost"}, headers=alice)
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_request"

    def test_sender_identity_comes_from_token(self, api_client, alice, conversation_id):
        message = send(api_client, alice, conversation_id, "hi", senderId="bob")
        assert message["senderId"] == "alice"

    def test_cross_conversation_reply(self, api_client, alice, conversation_id):
        other = api_client.get("/conversations/user/carol", headers=alice).json()
        foreign = send(api_client, alice, other["conversation"]["id"], "elsewhere")

        response = api_client.post(
            "/messages",
            json={"conversationId": conversation_id, "content": "re", "replyTo": foreign["id"]},
            headers=alice,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_reference"

    def test_history_auto_marks_read(self, api_client, alice, bob, conversation_id):
        first = send(api_client, alice, conversation_id, "one")
        second = send(api_client, alice, conversation_id, "two")

        body = api_client.get(f"/messages/conversation/{conversation_id}", headers=bob).json()

        assert [m["id"] for m in body["messages"]] == [first["id"], second["id"]]
        assert body["hasMore"] is False
        assert all(m["readBy"][0]["isRead"] for m in body["messages"])

        repeat = api_client.put(f"/messages/conversation/{conversation_id}/read", headers=bob)
        assert repeat.json() == {"messageIds": []}

    def test_history_pagination(self, api_client, alice, conversation_id):
        sent = [send(api_client, alice, conversation_id, f"m{i}") for i in range(3)]

        page = api_client.get(
            f"/messages/conversation/{conversation_id}?limit=2", headers=alice
        ).json()
        assert [m["id"] for m in page["messages"]] == [sent[1]["id"], sent[2]["id"]]
        assert page["hasMore"] is True

        older = api_client.get(
            f"/messages/conversation/{conversation_id}?limit=2&before={sent[1]['id']}",
            headers=alice,
        ).json()
        assert [m["id"] for m in older["messages"]] == [sent[0]["id"]]
        assert older["hasMore"] is False

    def test_mark_conversation_read(self, api_client, alice, bob, conversation_id):
        message = send(api_client, alice, conversation_id, "one")

        response = api_client.put(f"/messages/conversation/{conversation_id}/read", headers=bob)

        assert response.json() == {"messageIds": [message["id"]]}

    def test_mark_seen(self, api_client, alice, bob, conversation_id):
        message = send(api_client, alice, conversation_id, "one")

        first = api_client.put(f"/messages/{message['id']}/seen", headers=bob).json()
        second = api_client.put(f"/messages/{message['id']}/seen", headers=bob).json()

        assert first == {"messageId": message["id"], "changed": True}
        assert second == {"messageId": message["id"], "changed": False}

    def test_edit_own_message(self, api_client, alice, conversation_id):
        message = send(api_client, alice, conversation_id, "typo")

        response = api_client.put(
            f"/messages/{message['id']}", json={"content": "fixed"}, headers=alice
        )

        assert response.status_code == 200
        assert response.json()["messageData"]["content"] == "fixed"
        assert response.json()["messageData"]["isEdited"] is True

    def test_edit_other_users_message_forbidden(self, api_client, alice, bob, conversation_id):
        message = send(api_client, alice, conversation_id, "mine")

        response = api_client.put(
            f"/messages/{message['id']}", json={"content": "theirs"}, headers=bob
        )

        assert response.status_code == 403
        history = api_client.get(f"/messages/conversation/{conversation_id}", headers=alice)
        assert history.json()["messages"][0]["content"] == "mine"

    def test_delete_own_message(self, api_client, alice, bob, conversation_id):
        message = send(api_client, alice, conversation_id, "oops")

        response = api_client.delete(f"/messages/{message['id']}", headers=alice)
        assert response.json() == {"messageId": message["id"]}
        assert api_client.delete(f"/messages/{message['id']}", headers=alice).status_code == 200

        history = api_client.get(f"/messages/conversation/{conversation_id}", headers=bob).json()
        assert history["messages"][0]["isDeleted"] is True
        assert history["messages"][0]["content"] == "This message was deleted"

    def test_delete_other_users_message_forbidden(self, api_client, alice, bob, conversation_id):
        message = send(api_client, alice, conversation_id, "mine")
        response = api_client.delete(f"/messages/{message['id']}", headers=bob)
        assert response.status_code == 403

    def test_reaction_replace_and_remove(self, api_client, alice, bob, conversation_id):
        message = send(api_client, alice, conversation_id, "react to me")
        url = f"/messages/{message['id']}/reaction"

        api_client.post(url, json={"emoji": "👍"}, headers=bob)
        replaced = api_client.post(url, json={"emoji": "😂"}, headers=bob).json()
        assert [(r["userId"], r["emoji"]) for r in replaced["reactions"]] == [("bob", "😂")]

        removed = api_client.delete(url, headers=bob).json()
        assert removed == {"messageId": message["id"], "reactions": []}

        again = api_client.delete(url, headers=bob)
        assert again.status_code == 200
        assert again.json()["reactions"] == []

    def test_forward(self, api_client, alice, conversation_id):
        message = send(api_client, alice, conversation_id, "pass it on")

        response = api_client.post(
            f"/messages/{message['id']}/forward", json={"receiverId": "carol"}, headers=alice
        )

        assert response.status_code == 201
        forwarded = response.json()["messageData"]
        assert forwarded["forwarded"] is True
        assert forwarded["forwardedFrom"] == "alice"
        assert forwarded["conversationId"] != conversation_id

    def test_unknown_message(self, api_client, alice):
        response = api_client.put("/messages/missing/seen", headers=alice)
        assert response.status_code == 404
