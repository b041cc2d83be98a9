from unittest.mock import patch

import entrypoint
from app import app


@patch("entrypoint.uvicorn.run")
def test_main_serves_app(mock_run):
    entrypoint.main(host="127.0.0.1", port=9000)

    mock_run.assert_called_once()
    args, kwargs = mock_run.call_args
    assert args == (app,)
    assert kwargs["host"] == "127.0.0.1"
    assert kwargs["port"] == 9000
    assert kwargs["log_config"] is None
