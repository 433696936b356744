"""ChatService -- thread lifecycle, message validation, media and events"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from carechat.config import ChatSettings
from carechat.database import Base
from carechat.domain.chat.exceptions import (
    ChatFeatureDisabled,
    ChatForbidden,
    ChatNotFound,
    ChatStorageFailure,
    ChatValidationError,
)
from carechat.domain.chat.media import MediaAccessBroker
from carechat.domain.chat.repository import MessageStore, ThreadStore
from carechat.domain.chat.service import ChatService
from carechat.models import ROLE_CLIENT, ServiceRequest, User
from carechat.models_chat import THREAD_STATUS_CLOSED, THREAD_STATUS_OPEN, ChatThread


@pytest.fixture
def thread(service, service_request, client_user):
    return service.open_thread(service_request.id, client_user)


class TestOpenThread:
    def test_owner_opens_thread(self, service, service_request, client_user):
        thread = service.open_thread(service_request.id, client_user)

        assert thread.status == THREAD_STATUS_OPEN
        assert thread.request_id == service_request.id
        assert thread.client_id == client_user.id
        assert thread.admin_id is None
        assert thread.opened_at is not None

    def test_admin_opening_is_recorded(self, service, service_request, admin, client_user):
        thread = service.open_thread(service_request.id, admin)
        assert thread.admin_id == admin.id
        assert thread.client_id == client_user.id

    def test_open_is_idempotent(self, service, service_request, client_user, admin):
        first = service.open_thread(service_request.id, client_user)
        second = service.open_thread(service_request.id, admin)
        assert first.id == second.id

    def test_unrelated_client_is_forbidden(self, service, service_request, other_client):
        with pytest.raises(ChatForbidden):
            service.open_thread(service_request.id, other_client)

    def test_missing_request(self, service, client_user):
        with pytest.raises(ChatNotFound):
            service.open_thread(9999, client_user)

    def test_disabled_feature(self, db, media, broadcaster, cleanup_queue, service_request, client_user):
        disabled = ChatService(db, ChatSettings(enabled=False), media, broadcaster, cleanup_queue)
        with pytest.raises(ChatFeatureDisabled):
            disabled.open_thread(service_request.id, client_user)

    def test_concurrent_open_returns_winner(
        self, service, db, monkeypatch, service_request, client_user
    ):
        """A caller that loses the insert race gets the row the other caller created"""
        winner = ThreadStore.create(
            db,
            request_id=service_request.id,
            client_id=client_user.id,
            status=THREAD_STATUS_OPEN,
        )

        original = ThreadStore.find_by_request
        calls = {"n": 0}

        def stale_then_real(session, request_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return original(session, request_id)

        monkeypatch.setattr(ThreadStore, "find_by_request", staticmethod(stale_then_real))

        thread = service.open_thread(service_request.id, client_user)

        assert thread.id == winner.id
        assert calls["n"] == 2

    def test_two_writers_racing_share_one_thread(
        self, tmp_path, monkeypatch, chat_settings, media, broadcaster, cleanup_queue
    ):
        """Two sessions on separate connections insert at the same time; the unique constraint decides"""
        file_engine = create_engine(
            f"sqlite:///{tmp_path / 'chat.db'}",
            connect_args={"check_same_thread": False, "timeout": 10},
        )
        Base.metadata.create_all(bind=file_engine)
        Session = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)

        with Session() as setup:
            owner = User(email="owner@example.com", full_name="Owner", role=ROLE_CLIENT)
            setup.add(owner)
            setup.commit()
            request = ServiceRequest(user_id=owner.id)
            setup.add(request)
            setup.commit()
            owner_id, request_id = owner.id, request.id

        # Both callers must have seen "no thread yet" before either inserts
        both_checked = threading.Barrier(2, timeout=10)
        original_create = ThreadStore.create

        def create_after_barrier(session, **thread_data):
            both_checked.wait()
            return original_create(session, **thread_data)

        monkeypatch.setattr(ThreadStore, "create", staticmethod(create_after_barrier))

        def open_from_own_session():
            with Session() as session:
                actor = session.get(User, owner_id)
                chat = ChatService(session, chat_settings, media, broadcaster, cleanup_queue)
                return chat.open_thread(request_id, actor).id

        try:
            with ThreadPoolExecutor(max_workers=2) as pool:
                futures = [pool.submit(open_from_own_session) for _ in range(2)]
                thread_ids = [f.result(timeout=30) for f in futures]

            assert thread_ids[0] == thread_ids[1]
            with Session() as check:
                assert check.query(ChatThread).filter(ChatThread.request_id == request_id).count() == 1
        finally:
            file_engine.dispose()


class TestPostMessage:
    async def test_text_message_is_stored_and_broadcast(self, service, thread, client_user, broadcaster):
        message = await service.post_message(thread.id, client_user, {"type": "text", "text": "  hello  "})

        assert message.id is not None
        assert message.text == "hello"
        assert message.sender_id == client_user.id

        events = broadcaster.events_named("message.created")
        assert len(events) == 1
        assert events[0].id == message.id
        assert events[0].text == "hello"
        assert events[0].mediaUrl is None

    @pytest.mark.parametrize("text", [None, "", "   "])
    async def test_blank_text_rejected(self, service, thread, client_user, text):
        with pytest.raises(ChatValidationError) as exc:
            await service.post_message(thread.id, client_user, {"type": "text", "text": text})
        assert exc.value.field == "text"

    @pytest.mark.parametrize("message_type", [None, "video", "TEXT", ""])
    async def test_unknown_type_rejected(self, service, thread, client_user, message_type):
        with pytest.raises(ChatValidationError) as exc:
            await service.post_message(thread.id, client_user, {"type": message_type, "text": "x"})
        assert exc.value.field == "type"

    async def test_location_accepts_numeric_strings(self, service, thread, client_user, broadcaster):
        message = await service.post_message(
            thread.id, client_user, {"type": "location", "lat": "34.05", "lng": -118.24}
        )

        assert message.latitude == pytest.approx(34.05)
        assert message.longitude == pytest.approx(-118.24)
        assert message.text is None
        assert broadcaster.events_named("message.created")[0].lat == pytest.approx(34.05)

    @pytest.mark.parametrize(
        "lat,lng,field",
        [
            ("abc", 10, "lat"),
            (10, None, "lng"),
            (None, 10, "lat"),
            (True, 10, "lat"),
            (91, 10, "lat"),
            (10, -180.5, "lng"),
            ("nan", 10, "lat"),
            ([1], 10, "lat"),
        ],
    )
    async def test_invalid_coordinates_rejected(self, service, thread, client_user, lat, lng, field):
        with pytest.raises(ChatValidationError) as exc:
            await service.post_message(thread.id, client_user, {"type": "location", "lat": lat, "lng": lng})
        assert exc.value.field == field

    async def test_coordinates_on_the_bounds_accepted(self, service, thread, client_user):
        message = await service.post_message(thread.id, client_user, {"type": "location", "lat": -90, "lng": 180})
        assert (message.latitude, message.longitude) == (-90.0, 180.0)

    async def test_image_in_own_folder_is_signed(self, service, thread, client_user, broadcaster, storage):
        path = f"chats/{thread.id}/photo.jpg"
        message = await service.post_message(thread.id, client_user, {"type": "image", "mediaPath": path})

        assert message.media_path == path
        event = broadcaster.events_named("message.created")[0]
        assert event.mediaUrl.startswith(f"https://storage.test/{path}")
        assert storage.signed_gets == [(path, 900)]

    @pytest.mark.parametrize(
        "path_template",
        ["chats/{other}/photo.jpg", "chats/{id}/../{other}/photo.jpg", "/chats/{id}/photo.jpg", ""],
    )
    async def test_image_outside_thread_folder_rejected(
        self, service, db, thread, client_user, path_template
    ):
        path = path_template.format(id=thread.id, other=thread.id + 1)
        with pytest.raises(ChatValidationError) as exc:
            await service.post_message(thread.id, client_user, {"type": "image", "mediaPath": path})

        assert exc.value.field == "mediaPath"
        assert MessageStore.count_for_thread(db, thread.id) == 0

    async def test_signing_failure_does_not_fail_post(self, service, thread, client_user, storage, broadcaster):
        storage.fail_get = True
        path = f"chats/{thread.id}/photo.jpg"

        message = await service.post_message(thread.id, client_user, {"type": "image", "mediaPath": path})

        assert message.id is not None
        assert broadcaster.events_named("message.created")[0].mediaUrl is None

    async def test_unrelated_client_cannot_post(self, service, thread, other_client):
        with pytest.raises(ChatForbidden):
            await service.post_message(thread.id, other_client, {"type": "text", "text": "hi"})

    async def test_any_admin_can_post(self, service, thread, admin):
        message = await service.post_message(thread.id, admin, {"type": "text", "text": "on my way"})
        assert message.sender_id == admin.id

    async def test_missing_thread(self, service, client_user):
        with pytest.raises(ChatNotFound):
            await service.post_message(4242, client_user, {"type": "text", "text": "hi"})

    async def test_broadcast_failure_does_not_fail_post(self, service, thread, client_user, monkeypatch):
        async def broken_publish(thread_id, event):
            raise ConnectionError("broker down")

        monkeypatch.setattr(service.broadcaster, "publish", broken_publish)

        message = await service.post_message(thread.id, client_user, {"type": "text", "text": "hi"})
        assert message.id is not None


class TestListMessages:
    async def test_media_is_signed_per_read(self, service, thread, client_user, storage):
        path = f"chats/{thread.id}/photo.jpg"
        await service.post_message(thread.id, client_user, {"type": "image", "mediaPath": path})
        await service.post_message(thread.id, client_user, {"type": "text", "text": "see photo"})
        storage.signed_gets.clear()

        listing = service.list_messages(thread.id, client_user)

        assert [r.message.type for r in listing.messages] == ["text", "image"]
        assert listing.messages[0].media_url is None
        assert listing.messages[1].media_url.startswith("https://storage.test/")
        assert storage.signed_gets == [(path, 900)]
        assert listing.next_cursor is None

    async def test_signing_failure_degrades_to_none(self, service, thread, client_user, storage):
        await service.post_message(
            thread.id, client_user, {"type": "image", "mediaPath": f"chats/{thread.id}/a.png"}
        )
        storage.fail_get = True

        listing = service.list_messages(thread.id, client_user)
        assert listing.messages[0].media_url is None

    def test_unrelated_client_cannot_list(self, service, thread, other_client):
        with pytest.raises(ChatForbidden):
            service.list_messages(thread.id, other_client)

    async def test_readable_after_close(self, service, thread, client_user):
        await service.post_message(thread.id, client_user, {"type": "text", "text": "hi"})
        await service.close_thread(thread.id, client_user)

        listing = service.list_messages(thread.id, client_user)
        assert len(listing.messages) == 1


class TestUploadUrl:
    def test_allowed_type(self, service, thread, client_user, storage):
        ticket = service.create_upload_url(thread.id, client_user, "photo.png", "image/png")

        assert ticket.media_path.startswith(f"chats/{thread.id}/")
        assert ticket.media_path.endswith(".png")
        assert ticket.headers == {"Content-Type": "image/png"}
        assert storage.signed_puts == [(ticket.media_path, "image/png", 900)]

    def test_disallowed_type(self, service, thread, client_user, storage):
        with pytest.raises(ChatValidationError) as exc:
            service.create_upload_url(thread.id, client_user, "archive.zip", "application/zip")

        assert exc.value.field == "contentType"
        assert storage.signed_puts == []

    def test_storage_failure_propagates(self, service, thread, client_user, storage):
        storage.fail_put = True
        with pytest.raises(ChatStorageFailure):
            service.create_upload_url(thread.id, client_user, "photo.png", "image/png")

    async def test_closed_thread_refuses_uploads(self, service, thread, client_user):
        await service.close_thread(thread.id, client_user)
        with pytest.raises(ChatForbidden):
            service.create_upload_url(thread.id, client_user, "photo.png", "image/png")

    def test_custom_allow_list(self, db, storage, broadcaster, cleanup_queue, thread, client_user):
        settings = ChatSettings(enabled=True, allowed_image_mime=("image/gif",))
        custom = ChatService(db, settings, MediaAccessBroker(storage, settings), broadcaster, cleanup_queue)

        assert custom.create_upload_url(thread.id, client_user, None, "image/gif").media_path.endswith(".gif")
        with pytest.raises(ChatValidationError):
            custom.create_upload_url(thread.id, client_user, None, "image/png")


class TestCloseThread:
    async def test_close_emits_once_and_queues_cleanup(self, service, thread, client_user, broadcaster, cleanup_queue):
        closed = await service.close_thread(thread.id, client_user)

        assert closed.status == THREAD_STATUS_CLOSED
        assert closed.closed_at is not None
        assert cleanup_queue.enqueued == [thread.id]
        events = broadcaster.events_named("thread.closed")
        assert len(events) == 1
        assert events[0].threadId == thread.id

    async def test_close_is_idempotent(self, service, thread, client_user, admin, broadcaster, cleanup_queue):
        first = await service.close_thread(thread.id, client_user)
        first_closed_at = first.closed_at

        second = await service.close_thread(thread.id, admin)

        assert second.status == THREAD_STATUS_CLOSED
        assert second.closed_at == first_closed_at
        assert len(broadcaster.events_named("thread.closed")) == 1
        assert cleanup_queue.enqueued == [thread.id]

    async def test_lost_close_race_emits_nothing(self, service, thread, client_user, monkeypatch, broadcaster, cleanup_queue):
        monkeypatch.setattr(ThreadStore, "close_if_open", staticmethod(lambda db, thread_id, closed_at: False))

        await service.close_thread(thread.id, client_user)

        assert broadcaster.events_named("thread.closed") == []
        assert cleanup_queue.enqueued == []

    async def test_posting_after_close_is_forbidden_for_everyone(self, service, thread, client_user, admin):
        await service.close_thread(thread.id, admin)

        for actor in (client_user, admin):
            with pytest.raises(ChatForbidden):
                await service.post_message(thread.id, actor, {"type": "text", "text": "late"})

    async def test_cleanup_dispatch_failure_still_closes(self, service, thread, client_user, cleanup_queue, broadcaster):
        cleanup_queue.fail = True

        closed = await service.close_thread(thread.id, client_user)

        assert closed.status == THREAD_STATUS_CLOSED
        assert len(broadcaster.events_named("thread.closed")) == 1

    async def test_unrelated_client_cannot_close(self, service, thread, other_client):
        with pytest.raises(ChatForbidden):
            await service.close_thread(thread.id, other_client)


class TestSubscriptionAuthorization:
    def test_channel_for_participant(self, service, thread, client_user):
        assert service.authorize_channel(f"chat.{thread.id}", client_user).id == thread.id

    def test_channel_for_outsider(self, service, thread, other_client):
        with pytest.raises(ChatForbidden):
            service.authorize_channel(f"chat.{thread.id}", other_client)

    def test_private_channel_for_participant(self, service, thread, client_user):
        assert service.authorize_channel(f"private-chat.{thread.id}", client_user).id == thread.id

    def test_private_channel_for_outsider(self, service, thread, other_client):
        with pytest.raises(ChatForbidden):
            service.authorize_channel(f"private-chat.{thread.id}", other_client)

    @pytest.mark.parametrize("channel", ["chat.", "chat.abc", "private-chat.abc", "thread.1"])
    def test_malformed_channel(self, service, client_user, channel):
        with pytest.raises(ChatValidationError) as exc:
            service.authorize_channel(channel, client_user)
        assert exc.value.field == "channel"

    def test_unknown_thread(self, service, client_user):
        with pytest.raises(ChatNotFound):
            service.authorize_channel("chat.9999", client_user)

    def test_thread_for_request(self, service, thread, service_request, admin, other_client):
        assert service.get_thread_for_request(service_request.id, admin).id == thread.id
        with pytest.raises(ChatForbidden):
            service.get_thread_for_request(service_request.id, other_client)
        with pytest.raises(ChatNotFound):
            service.get_thread_for_request(9999, admin)
