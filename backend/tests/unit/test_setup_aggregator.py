"""Tests for the aggregator setup script."""

import os
from unittest.mock import MagicMock, patch

import pytest

from integrations.aggregator_protocol import AccessToken
from integrations.exceptions import AggregatorAuthError
from scripts.setup_aggregator import main, store_credentials, validate_credentials


class TestValidateCredentials:
    @patch("scripts.setup_aggregator.AggregatorClient")
    def test_returns_token_lifetime_and_closes_client(self, mock_cls):
        mock_client = MagicMock()
        mock_client.get_access_token.return_value = AccessToken(access_token="t", expires_in=1800)
        mock_cls.return_value = mock_client

        assert validate_credentials("cid", "secret", token_url="https://auth/token") == 1800

        mock_cls.assert_called_once_with(
            client_id="cid", client_secret="secret", token_url="https://auth/token"
        )
        mock_client.close.assert_called_once()

    @patch("scripts.setup_aggregator.AggregatorClient")
    def test_failure_propagates_after_close(self, mock_cls):
        mock_client = MagicMock()
        mock_client.get_access_token.side_effect = AggregatorAuthError("bad creds")
        mock_cls.return_value = mock_client

        with pytest.raises(AggregatorAuthError):
            validate_credentials("cid", "wrong")
        mock_client.close.assert_called_once()


class TestStoreCredentials:
    @patch("scripts.setup_aggregator.set_credential")
    def test_reports_failed_keys(self, mock_set):
        mock_set.side_effect = lambda key, value: key == "AGGREGATOR_CLIENT_ID"

        failed = store_credentials({"AGGREGATOR_CLIENT_ID": "cid", "AGGREGATOR_CLIENT_SECRET": "s"})

        assert failed == ["AGGREGATOR_CLIENT_SECRET"]


@pytest.fixture
def no_dotenv():
    env = {k: v for k, v in os.environ.items() if k != "AGGREGATOR_CLIENT_ID"}
    with patch("scripts.setup_aggregator.load_dotenv"), patch.dict(os.environ, env, clear=True):
        yield


@pytest.mark.usefixtures("no_dotenv")
class TestMain:
    @patch("scripts.setup_aggregator.store_credentials")
    @patch("scripts.setup_aggregator.validate_credentials", return_value=3600)
    @patch("builtins.input", side_effect=["cid", "secret", ""])
    def test_stores_on_default_answer(self, _input, mock_validate, mock_store):
        main()

        mock_validate.assert_called_once_with("cid", "secret")
        mock_store.assert_called_once_with(
            {"AGGREGATOR_CLIENT_ID": "cid", "AGGREGATOR_CLIENT_SECRET": "secret"}
        )

    @patch("scripts.setup_aggregator.store_credentials")
    @patch("scripts.setup_aggregator.validate_credentials", return_value=3600)
    @patch("builtins.input", side_effect=["cid", "secret", "n"])
    def test_prints_env_lines_when_declined(self, _input, _validate, mock_store, capsys):
        main()

        mock_store.assert_not_called()
        assert "AGGREGATOR_CLIENT_ID=cid" in capsys.readouterr().out

    @patch("builtins.input", side_effect=[""])
    def test_missing_client_id_exits(self, _input):
        with pytest.raises(SystemExit):
            main()

    @patch("scripts.setup_aggregator.validate_credentials", side_effect=AggregatorAuthError("no"))
    @patch("builtins.input", side_effect=["cid", "secret"])
    def test_rejected_credentials_exit(self, _input, _validate, capsys):
        with pytest.raises(SystemExit):
            main()
        assert "rejected" in capsys.readouterr().out

    @patch("scripts.setup_aggregator.store_credentials")
    @patch("scripts.setup_aggregator.validate_credentials", return_value=3600)
    @patch("builtins.input", side_effect=["", "secret", "y"])
    def test_blank_client_id_uses_env_value(self, _input, mock_validate, _store):
        with patch.dict(os.environ, {"AGGREGATOR_CLIENT_ID": "from-env"}):
            main()

        mock_validate.assert_called_once_with("from-env", "secret")
