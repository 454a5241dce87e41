"""Tests for the error hierarchy and the tool boundary handler."""

from cosmosdb_mcp.config_manager import get_config_manager
from cosmosdb_mcp.error_handler import (
    BackendError,
    ConfigError,
    CosmosMCPError,
    ErrorCategory,
    ErrorHandler,
    ModificationsDisabledError,
    NoDefaultError,
    NotActiveError,
    NotFoundError,
    SchemaError,
    ValidationError,
    get_error_handler,
)


class TestErrorHierarchy:
    """Test the custom exception classes."""

    def test_all_errors_share_the_base(self):
        errors = [
            ConfigError("bad file", source="/tmp/c.json"),
            ValidationError("missing id", field_name="id"),
            NotFoundError("nope"),
            NotActiveError("a", ["b"]),
            NoDefaultError(),
            ModificationsDisabledError("a", "create_document"),
            SchemaError("no partition key", container_id="orders"),
            BackendError("boom", status_code=503),
        ]
        for error in errors:
            assert isinstance(error, CosmosMCPError)
            assert error.message

    def test_metadata_and_categories(self):
        assert ConfigError("x", source="f").metadata == {'source': 'f'}
        assert ValidationError("x", field_name="id").metadata == {'field': 'id'}
        assert SchemaError("x", container_id="c").category == ErrorCategory.SCHEMA
        backend = BackendError("x", status_code=409)
        assert backend.status_code == 409
        assert backend.metadata['status_code'] == 409

    def test_not_active_lists_active_ids(self):
        error = NotActiveError("b", ["a", "c"])
        assert "'b'" in error.message
        assert "a, c" in error.message
        assert error.connection_id == "b"

        assert "none" in NotActiveError("b", []).message

    def test_modifications_disabled_names_connection_and_operation(self):
        error = ModificationsDisabledError("prod", "delete_document")
        assert "'prod'" in error.message
        assert "delete_document" in error.message
        assert error.operation == "delete_document"
        assert error.connection_id == "prod"

    def test_str_and_to_dict(self):
        error = NotFoundError("Container 'x' not found", connection_id="a")
        assert str(error) == "[NOT_FOUND] Container 'x' not found"

        data = error.to_dict()
        assert data['category'] == 'not_found'
        assert data['connection_id'] == 'a'
        assert data['message'] == "Container 'x' not found"


class TestErrorHandler:
    """Test conversion of exceptions to failure results."""

    def setup_method(self):
        self.handler = ErrorHandler()

    def test_project_error_message_passes_through(self):
        result = self.handler.to_result(NotFoundError("Document 'd' not found"), {'tool': 't'})
        assert result == {'success': False, 'error': "Document 'd' not found"}

    def test_foreign_error_becomes_backend_error(self):
        processed = self.handler.handle_error(RuntimeError("socket closed"), {'tool': 't'})

        assert isinstance(processed, BackendError)
        assert processed.message == "RuntimeError: socket closed"
        assert processed.metadata['original_error_type'] == 'RuntimeError'

    def test_foreign_status_code_is_kept(self):
        class HttpFailure(Exception):
            status_code = 429

        processed = self.handler.handle_error(HttpFailure("throttled"))
        assert processed.status_code == 429

    def test_connection_id_filled_from_context(self):
        processed = self.handler.handle_error(SchemaError("x"), {'connection_id': 'a'})
        assert processed.connection_id == 'a'

    def test_statistics_are_recorded(self):
        self.handler.to_result(ValidationError("x"), {'connection_id': 'a'})
        self.handler.to_result(ValidationError("y"), {'connection_id': 'a'})
        self.handler.to_result(BackendError("z"))

        stats = self.handler.logger.get_error_statistics()
        assert stats['total_errors'] == 3
        assert stats['errors_by_category'] == {'validation': 2, 'backend': 1}
        assert stats['errors_by_connection'] == {'a': 2}
        assert len(stats['recent_errors']) == 3

    def test_result_never_has_data(self):
        result = self.handler.to_result(ValueError("bad"))
        assert set(result) == {'success', 'error'}
        assert result['success'] is False


class TestGlobalAccessors:
    """Test the process-wide handler and config manager accessors."""

    def test_error_handler_is_shared(self):
        assert get_error_handler() is get_error_handler()

    def test_config_manager_is_shared(self):
        assert get_config_manager() is get_config_manager()
