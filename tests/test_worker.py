import dataclasses
import datetime as dt
from unittest.mock import MagicMock

import pytest

from ocr_queue.bundle import Bundle
from ocr_queue.models import DocumentStatus
from ocr_queue.provider import ExtractionResult, OcrProviderError
from ocr_queue.repository import DocumentWithMedia
from ocr_queue.worker import DocumentProcessor

NOW = dt.datetime(2024, 5, 2, 12, 0, tzinfo=dt.timezone.utc)


@pytest.fixture
def mock_doc():
    """Fixture to create a claimed document joined with its media."""
    return DocumentWithMedia(
        id="doc-1",
        job_id="job-1",
        media_id="media-1",
        status=DocumentStatus.PROCESSING,
        attempts=0,
        next_attempt_at=None,
        provider=None,
        language=None,
        text=None,
        result_json=None,
        error_message=None,
        created_at=NOW,
        updated_at=NOW,
        started_at=NOW,
        finished_at=None,
        file_name="receipt.jpg",
        file_path="media/receipt.jpg",
        mime_type="image/jpeg",
        media_type="image",
        message_id="msg-1",
        group_id="group-1",
        is_monitored=True,
    )


@pytest.fixture
def mock_repository(mock_doc):
    """Fixture to create a mock OcrRepository."""
    repository = MagicMock()
    repository.get_document_with_media.return_value = mock_doc
    repository.find_succeeded_document_by_message_id.return_value = None
    repository.mark_documents_succeeded_by_media_ids.return_value = {"job-1", "job-0"}
    return repository


@pytest.fixture
def mock_bundle_builder():
    builder = MagicMock()
    builder.build.return_value = Bundle(
        content=b"jpeg", mime_type="image/jpeg", file_name="receipt.jpg", media_ids=["media-1"]
    )
    return builder


@pytest.fixture
def mock_ocr_service():
    """Fixture to create a mock OcrService."""
    service = MagicMock()
    service.extract.return_value = ExtractionResult(
        text="TOTAL 12.50", raw_result={"status": "succeeded"}, provider="azure-read", language="unk"
    )
    return service


@pytest.fixture
def processor(mock_repository, mock_bundle_builder, mock_ocr_service, settings):
    return DocumentProcessor(
        "doc-1",
        mock_repository,
        mock_bundle_builder,
        mock_ocr_service,
        settings,
        clock=lambda: NOW,
    )


def test_process_document_success(processor, mock_repository, mock_ocr_service):
    """
    Test the successful processing of a single, unbundled document.
    """
    affected = processor.process()

    assert affected == {"job-1"}
    mock_repository.mark_job_started.assert_called_once_with("job-1", now=NOW)
    mock_ocr_service.extract.assert_called_once_with(b"jpeg", "image/jpeg", "receipt.jpg", "unk")
    mock_repository.mark_document_succeeded.assert_called_once_with(
        "doc-1",
        provider="azure-read",
        language="unk",
        text="TOTAL 12.50",
        result_json={"status": "succeeded", "bundled_media_ids": ["media-1"]},
        now=NOW,
    )
    mock_repository.mark_documents_succeeded_by_media_ids.assert_not_called()
    mock_repository.mark_document_failed.assert_not_called()


def test_process_bundle_marks_every_media(
    processor, mock_repository, mock_bundle_builder, mock_ocr_service
):
    mock_bundle_builder.build.return_value = Bundle(
        content=b"png",
        mime_type="image/png",
        file_name="bundle-msg-1.png",
        media_ids=["media-1", "media-2"],
    )

    affected = processor.process()

    assert affected == {"job-1", "job-0"}
    mock_ocr_service.extract.assert_called_once_with(b"png", "image/png", "bundle-msg-1.png", "unk")
    args, kwargs = mock_repository.mark_documents_succeeded_by_media_ids.call_args
    assert args == (["media-1", "media-2"], "job-1")
    assert kwargs["result_json"]["bundled_media_ids"] == ["media-1", "media-2"]
    mock_repository.mark_document_succeeded.assert_not_called()


def test_missing_document_is_ignored(processor, mock_repository, mock_ocr_service):
    mock_repository.get_document_with_media.return_value = None

    assert processor.process() == set()
    mock_ocr_service.extract.assert_not_called()


def test_document_no_longer_processing_is_untouched(
    processor, mock_repository, mock_doc, mock_ocr_service
):
    mock_repository.get_document_with_media.return_value = dataclasses.replace(
        mock_doc, status=DocumentStatus.SKIPPED
    )

    assert processor.process() == set()
    mock_repository.mark_job_started.assert_not_called()
    mock_repository.mark_document_skipped.assert_not_called()
    mock_ocr_service.extract.assert_not_called()


def test_sibling_success_skips_document(processor, mock_repository, mock_ocr_service):
    mock_repository.find_succeeded_document_by_message_id.return_value = MagicMock(id="doc-0")

    processor.process()

    mock_repository.find_succeeded_document_by_message_id.assert_called_once_with(
        "msg-1", exclude_document_id="doc-1"
    )
    mock_repository.mark_document_skipped.assert_called_once_with(
        "doc-1", "Bundled by another OCR result", now=NOW
    )
    mock_ocr_service.extract.assert_not_called()


def test_unmonitored_group_skips_document(processor, mock_repository, mock_doc):
    mock_repository.get_document_with_media.return_value = dataclasses.replace(
        mock_doc, is_monitored=False
    )

    processor.process()

    mock_repository.mark_document_skipped.assert_called_once_with(
        "doc-1", "Group no longer monitored", now=NOW
    )


def test_oversized_bundle_is_skipped(
    processor, mock_repository, mock_bundle_builder, mock_ocr_service, settings
):
    mock_bundle_builder.build.return_value = Bundle(
        content=b"x" * (settings.max_file_size_bytes + 1),
        mime_type="image/jpeg",
        file_name="receipt.jpg",
        media_ids=["media-1"],
    )

    processor.process()

    mock_repository.mark_document_skipped.assert_called_once_with(
        "doc-1", "File exceeds OCR size limit", now=NOW
    )
    mock_ocr_service.extract.assert_not_called()


def test_provider_error_schedules_retry(processor, mock_repository, mock_ocr_service, settings):
    mock_ocr_service.extract.side_effect = OcrProviderError("Azure OCR timeout")

    affected = processor.process()

    assert affected == {"job-1"}
    mock_repository.mark_document_failed.assert_called_once_with(
        "doc-1",
        attempts=1,
        error_message="Azure OCR timeout",
        retry_at=NOW + dt.timedelta(seconds=settings.OCR_RETRY_BACKOFF_SECONDS),
        final=False,
        now=NOW,
    )
    mock_repository.record_job_error.assert_not_called()


def test_last_attempt_fails_document_and_records_job_error(
    processor, mock_repository, mock_doc, mock_ocr_service
):
    mock_repository.get_document_with_media.return_value = dataclasses.replace(
        mock_doc, attempts=2
    )
    mock_ocr_service.extract.side_effect = RuntimeError("connection reset")

    processor.process()

    kwargs = mock_repository.mark_document_failed.call_args.kwargs
    assert kwargs["attempts"] == 3
    assert kwargs["final"] is True
    assert kwargs["retry_at"] is None
    mock_repository.record_job_error.assert_called_once_with("job-1", "connection reset")


def test_missing_path_and_missing_file(processor, mock_repository, mock_doc, mock_bundle_builder):
    mock_repository.get_document_with_media.return_value = dataclasses.replace(
        mock_doc, file_path=None
    )
    processor.process()
    assert mock_repository.mark_document_failed.call_args.kwargs["error_message"] == "Missing file path"
    mock_bundle_builder.build.assert_not_called()

    mock_repository.get_document_with_media.return_value = mock_doc
    mock_bundle_builder.build.return_value = None
    processor.process()
    assert (
        mock_repository.mark_document_failed.call_args.kwargs["error_message"]
        == "File not found on disk"
    )


def test_exception_message_falls_back_to_type_name(processor, mock_repository, mock_ocr_service):
    mock_ocr_service.extract.side_effect = TimeoutError()

    processor.process()

    assert mock_repository.mark_document_failed.call_args.kwargs["error_message"] == "TimeoutError"


def test_failure_on_released_document_is_dropped(
    processor, mock_repository, mock_doc, mock_ocr_service
):
    """
    A document cancelled while the provider ran must not re-enter the retry path.
    """
    mock_repository.get_document_with_media.return_value = dataclasses.replace(
        mock_doc, attempts=2
    )
    mock_repository.mark_document_failed.return_value = False
    mock_ocr_service.extract.side_effect = OcrProviderError("timeout")

    affected = processor.process()

    assert affected == set()
    mock_repository.mark_document_failed.assert_called_once()
    mock_repository.record_job_error.assert_not_called()


def test_success_on_released_document_is_dropped(processor, mock_repository):
    mock_repository.mark_document_succeeded.return_value = False

    assert processor.process() == set()


def test_skip_on_released_document_is_dropped(processor, mock_repository, mock_doc):
    mock_repository.get_document_with_media.return_value = dataclasses.replace(
        mock_doc, is_monitored=False
    )
    mock_repository.mark_document_skipped.return_value = False

    assert processor.process() == set()
