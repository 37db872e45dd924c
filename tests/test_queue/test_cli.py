"""
Unit tests for the command-line interface.
"""

from unittest.mock import MagicMock, patch

import pytest
from bson import ObjectId

from mongo_queue.cli import load_handler, main, parse_field_spec, parse_json_object
from mongo_queue.errors import InvalidArgumentError


@pytest.fixture
def mock_config():
    """Patch Config so commands run against a mocked queue."""
    with patch("mongo_queue.cli.Config") as mock_config_class:
        config = mock_config_class.return_value
        config.queue_settings = {
            "reset_duration": 300.0,
            "wait_duration": 3.0,
            "poll_duration": 0.2,
            "retry_delay": 60.0,
        }
        config.get_queue.return_value = MagicMock()
        yield config


class TestParsing:

    def test_parse_field_spec(self):
        assert parse_field_spec("type") == ("type", 1)
        assert parse_field_spec("type:-1") == ("type", -1)
        assert parse_field_spec("a.b:1") == ("a.b", 1)

    def test_parse_field_spec_bad_direction(self):
        with pytest.raises(InvalidArgumentError):
            parse_field_spec("type:2")

    def test_parse_json_object(self):
        assert parse_json_object('{"a": {"$gte": 1}}', "query") == {"a": {"$gte": 1}}
        assert parse_json_object(None, "query") == {}

    @pytest.mark.parametrize("text", ["[1, 2]", "{not json", "3"])
    def test_parse_json_object_invalid(self, text):
        with pytest.raises(InvalidArgumentError):
            parse_json_object(text, "payload")


class TestCommands:
    """Test CLI commands with a mocked queue."""

    def test_no_command(self, capsys):
        assert main([]) == 1

    def test_send(self, mock_config, capsys):
        queue = mock_config.get_queue.return_value
        message_id = ObjectId()
        queue.send.return_value = message_id

        assert main(["send", '{"type": "resize"}', "--priority", "0.5"]) == 0

        queue.send.assert_called_once_with({"type": "resize"}, earliest_get=None, priority=0.5)
        assert str(message_id) in capsys.readouterr().out
        mock_config.close.assert_called_once()

    def test_send_with_delay(self, mock_config):
        queue = mock_config.get_queue.return_value

        assert main(["send", "{}", "--delay", "30"]) == 0

        assert queue.send.call_args.kwargs["earliest_get"] is not None

    def test_send_invalid_payload_does_not_connect(self, mock_config):
        assert main(["send", "[1]"]) == 1
        mock_config.get_queue.assert_not_called()

    def test_get(self, mock_config, capsys):
        queue = mock_config.get_queue.return_value
        message_id = ObjectId()
        queue.get.return_value = {"type": "resize", "id": message_id}

        assert main(["get", "--query", '{"type": "resize"}', "--reset-duration", "60", "--ack"]) == 0

        queue.get.assert_called_once_with({"type": "resize"}, 60.0, wait_duration=3.0,
                                          poll_duration=0.2)
        queue.ack.assert_called_once_with({"type": "resize", "id": message_id})
        assert str(message_id) in capsys.readouterr().out

    def test_get_nothing_available(self, mock_config):
        queue = mock_config.get_queue.return_value
        queue.get.return_value = None

        assert main(["get", "--wait", "0"]) == 1
        assert queue.get.call_args.kwargs["wait_duration"] == 0.0
        queue.ack.assert_not_called()

    def test_ack(self, mock_config):
        queue = mock_config.get_queue.return_value
        message_id = ObjectId()

        assert main(["ack", str(message_id)]) == 0

        queue.ack.assert_called_once_with({"id": message_id})

    def test_ack_invalid_id(self, mock_config):
        assert main(["ack", "not-an-object-id"]) == 1
        mock_config.get_queue.assert_not_called()

    @pytest.mark.parametrize("flags, running", [
        ([], None),
        (["--running"], True),
        (["--not-running"], False),
    ])
    def test_count(self, mock_config, capsys, flags, running):
        queue = mock_config.get_queue.return_value
        queue.count.return_value = 4

        assert main(["count", "--query", '{"type": "a"}'] + flags) == 0

        queue.count.assert_called_once_with({"type": "a"}, running)
        assert capsys.readouterr().out.strip() == "4"

    def test_status(self, mock_config, capsys):
        queue = mock_config.get_queue.return_value
        queue.count.side_effect = [10, 3]

        assert main(["status"]) == 0

        out = capsys.readouterr().out
        assert "Total:   10" in out
        assert "Running: 3" in out
        assert "Waiting: 7" in out

    def test_ensure_indexes(self, mock_config):
        queue = mock_config.get_queue.return_value

        assert main(["ensure-indexes", "--before-sort", "type", "--after-sort", "boo:-1",
                     "--count-field", "type", "--count-running"]) == 0

        queue.ensure_get_index.assert_called_once_with([("type", 1)], [("boo", -1)])
        queue.ensure_count_index.assert_called_once_with([("type", 1)], True)

    def test_ensure_indexes_get_only(self, mock_config):
        queue = mock_config.get_queue.return_value

        assert main(["ensure-indexes"]) == 0

        queue.ensure_get_index.assert_called_once_with([], [])
        queue.ensure_count_index.assert_not_called()

    def test_command_failure(self, mock_config):
        mock_config.get_queue.side_effect = RuntimeError("cannot connect")
        assert main(["status"]) == 1


class TestWorkCommand:
    """Test running a worker from the command line."""

    def test_load_handler(self):
        handler = load_handler("json:dumps")
        assert handler({"a": 1}) == '{"a": 1}'

    @pytest.mark.parametrize("spec", ["json", "json:", ":dumps", "no_such_module_xyz:run",
                                      "json:no_such_function", "json:decoder"])
    def test_load_handler_invalid(self, spec):
        with pytest.raises(InvalidArgumentError):
            load_handler(spec)

    @patch("mongo_queue.cli.QueueWorker")
    def test_work(self, mock_worker_class, mock_config, capsys):
        worker = mock_worker_class.return_value
        worker.worker_id = "worker_test"
        worker.run.return_value = {
            "messages_processed": 5,
            "messages_failed": 1,
            "messages_forwarded": 2,
            "start_time": 100.0,
            "end_time": 112.5,
        }

        assert main(["work", "--handler", "json:dumps", "--query", '{"type": "resize"}',
                     "--max-messages", "6", "--stop-when-empty"]) == 0

        args, kwargs = mock_worker_class.call_args
        assert args[0] is mock_config.get_queue.return_value
        assert args[1]({"a": 1}) == '{"a": 1}'
        assert kwargs == {
            "query": {"type": "resize"},
            "reset_duration": 300.0,
            "wait_duration": 3.0,
            "poll_duration": 0.2,
            "retry_delay": 60.0,
            "max_messages": 6,
            "stop_when_empty": True,
            "worker_id": None,
        }
        worker.install_signal_handlers.assert_called_once()
        worker.run.assert_called_once()
        mock_config.close.assert_called_once()

        out = capsys.readouterr().out
        assert "Worker ID: worker_test" in out
        assert "Processed: 5" in out
        assert "Failed:    1" in out
        assert "Runtime:   12.5 seconds" in out

    @patch("mongo_queue.cli.QueueWorker")
    def test_work_bad_handler_does_not_connect(self, mock_worker_class, mock_config):
        assert main(["work", "--handler", "no_such_module_xyz:run"]) == 1

        mock_config.get_queue.assert_not_called()
        mock_worker_class.assert_not_called()

    @patch("mongo_queue.cli.QueueWorker")
    def test_work_closes_config_on_failure(self, mock_worker_class, mock_config):
        mock_worker_class.return_value.run.side_effect = RuntimeError("store unavailable")

        assert main(["work", "--handler", "json:dumps"]) == 1

        mock_config.close.assert_called_once()
