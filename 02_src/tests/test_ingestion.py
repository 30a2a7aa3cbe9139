"""Tests for the image upload and enrichment flow."""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from copilot.exceptions import ConversationNotFoundError, ValidationError
from copilot.images import ImageIngestion, ImageSummarizer, UploadedImage, build_storage_key
from copilot.images.ingestion import safe_basename
from copilot.models import ContentType, StructuredSummary


@pytest.fixture
def embeddings():
    provider = Mock()
    provider.embed_text = AsyncMock(return_value=[0.1, 0.2, 0.3])
    return provider


@pytest.fixture
def summarizer():
    summarizer = Mock(spec=ImageSummarizer)
    summarizer.summarize = AsyncMock(
        return_value=StructuredSummary(summary="Cracked pipe joint", objects=["pipe", "joint"])
    )
    return summarizer


@pytest.fixture
def ingestion(storage, object_store, summarizer, embeddings, tracker):
    return ImageIngestion(storage, object_store, summarizer, embeddings, tracker)


@pytest.fixture
def readable():
    with patch(
        "copilot.images.ingestion.wait_until_readable", new=AsyncMock(return_value=True)
    ) as probe:
        yield probe


PHOTO = UploadedImage(filename="leak under sink.JPG", mime_type="image/jpeg", data=b"\xff\xd8jpeg")


class TestStorageKeys:
    """Tests for object key construction."""

    def test_key_layout(self):
        """Test the durable key layout."""
        key = build_storage_key("acme", "conv-1", "msg-1", "leak under sink.JPG", 1700000000000)
        assert key == (
            "companies/acme/conversations/conv-1/messages/msg-1/1700000000000-leak-under-sink.JPG"
        )

    def test_unknown_company(self):
        """Test the placeholder for a missing company."""
        key = build_storage_key(None, "c", "m", "a.png", 1)
        assert key.startswith("companies/unknown-company/")

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("photo.png", ("photo", ".png")),
            ("../../etc/passwd", ("passwd", "")),
            ("weird name!!.jpeg", ("weird-name", ".jpeg")),
            ("", ("image", "")),
            (".hidden", ("hidden", "")),
        ],
    )
    def test_safe_basename(self, filename, expected):
        """Test that filenames are made key-safe."""
        assert safe_basename(filename) == expected


class TestUploadImages:
    """Tests for ImageIngestion.upload_images()."""

    async def test_upload_and_enrich(
        self, storage, conversation, ingestion, object_store, summarizer, embeddings, readable
    ):
        """Test that bytes, message, rows and summaries are all written."""
        message = await ingestion.upload_images(
            conversation.id, "  Is this joint cracked?  ", [PHOTO], sender_id="tech-1",
            company_id="acme",
        )

        assert message.content_type == ContentType.IMAGE
        assert message.content == "Is this joint cracked?"
        assert len(message.attachments) == 1
        key = message.attachments[0].storage_key
        assert key.startswith(f"companies/acme/conversations/{conversation.id}/messages/{message.id}/")
        assert object_store.objects[key] == (PHOTO.data, "image/jpeg")

        rows = await storage.get_recent_image_files(conversation.id, 5)
        assert len(rows) == 1
        assert rows[0].message_id == message.id
        assert rows[0].storage_key == key
        assert rows[0].embedding == [0.1, 0.2, 0.3]

        stored = await storage.get_message(message.id)
        assert stored.metadata["image_summaries"] == [
            {"id": rows[0].id, **StructuredSummary(summary="Cracked pipe joint", objects=["pipe", "joint"]).to_dict()}
        ]
        assert message.metadata["image_summaries"] == stored.metadata["image_summaries"]
        embeddings.embed_text.assert_awaited_once_with("Cracked pipe joint")

        events = await storage.get_trace_events(event_types=["images_uploaded"])
        assert len(events) == 1
        assert events[0].data["message_id"] == message.id

    async def test_unreadable_image_still_uploads(
        self, storage, conversation, ingestion, summarizer
    ):
        """Test that a 403 on the freshly signed URL only skips the summary."""
        with patch(
            "copilot.images.ingestion.wait_until_readable", new=AsyncMock(return_value=False)
        ):
            message = await ingestion.upload_images(conversation.id, "what is this?", [PHOTO])

        summarizer.summarize.assert_not_called()
        stored = await storage.get_message(message.id)
        assert stored is not None
        assert "image_summaries" not in stored.metadata

    async def test_summarizer_failure_still_uploads(
        self, storage, conversation, ingestion, summarizer, readable
    ):
        """Test that a summarizer returning None leaves the upload intact."""
        summarizer.summarize.return_value = None
        message = await ingestion.upload_images(conversation.id, "what is this?", [PHOTO])

        stored = await storage.get_message(message.id)
        assert "image_summaries" not in stored.metadata
        assert len(await storage.get_recent_image_files(conversation.id, 5)) == 1

    async def test_enrichment_exception_contained(
        self, storage, conversation, ingestion, embeddings, readable
    ):
        """Test that an embedding error keeps the upload and its summary."""
        embeddings.embed_text.side_effect = RuntimeError("embedding backend down")
        message = await ingestion.upload_images(conversation.id, "what is this?", [PHOTO])

        stored = await storage.get_message(message.id)
        assert stored is not None
        assert stored.metadata["image_summaries"][0]["summary"] == "Cracked pipe joint"

    async def test_embedding_write_failure_keeps_summary(
        self, storage, conversation, ingestion, summarizer, readable, monkeypatch
    ):
        """Test that a failed embedding write does not discard the summary."""
        monkeypatch.setattr(
            storage, "update_image_embedding", AsyncMock(side_effect=RuntimeError("db locked"))
        )

        message = await ingestion.upload_images(conversation.id, "what is this?", [PHOTO])

        summarizer.summarize.assert_awaited_once()
        stored = await storage.get_message(message.id)
        assert [s["summary"] for s in stored.metadata["image_summaries"]] == ["Cracked pipe joint"]
        rows = await storage.get_recent_image_files(conversation.id, 5)
        assert rows[0].embedding is None

    async def test_enrich_disabled(self, conversation, ingestion, summarizer, readable):
        """Test that enrichment can be skipped."""
        await ingestion.upload_images(conversation.id, "q", [PHOTO], enrich=False)
        summarizer.summarize.assert_not_called()

    async def test_validation(self, conversation, ingestion):
        """Test that empty uploads and questions are rejected."""
        with pytest.raises(ValidationError):
            await ingestion.upload_images(conversation.id, "q", [])
        with pytest.raises(ValidationError):
            await ingestion.upload_images(conversation.id, "   ", [PHOTO])

    async def test_unknown_conversation(self, ingestion, object_store):
        """Test that nothing is stored for an unknown conversation."""
        with pytest.raises(ConversationNotFoundError):
            await ingestion.upload_images("missing", "q", [PHOTO])
        assert object_store.objects == {}
