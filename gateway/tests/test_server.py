import io
import os
import tempfile
import unittest
from unittest import mock

from msg_gateway.directory import SQLiteUserDirectory
from msg_gateway.http_api import RUNTIME_KEY
from msg_gateway.server import main
from msg_gateway.sqlite_backend import SQLiteBackend


class TestGatewayServer(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "messaging.db")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_add_user_provisions_directory(self):
        buffer = io.StringIO()

        exit_code = main(["add-user", "u_zed", "--handle", "zed", "--db", self.db_path], output=buffer)

        self.assertEqual(exit_code, 0)
        self.assertEqual(buffer.getvalue().strip(), "u_zed\tzed")
        backend = SQLiteBackend(self.db_path)
        try:
            self.assertEqual(SQLiteUserDirectory(backend).resolve("zed"), "u_zed")
        finally:
            backend.close()

    def test_add_user_display_name_label(self):
        buffer = io.StringIO()
        main(["add-user", "u_yan", "--display-name", "Yan Y.", "--db", self.db_path], output=buffer)
        self.assertEqual(buffer.getvalue().strip(), "u_yan\tYan Y.")

    def test_command_required(self):
        with mock.patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                main([])

    def test_serve_builds_app_from_flags(self):
        upload_dir = os.path.join(self.tmpdir.name, "uploads")
        with mock.patch("msg_gateway.server.web.run_app") as run_app, mock.patch(
            "msg_gateway.server.setup_logging"
        ) as setup_logging:
            exit_code = main(
                ["serve", "--port", "9090", "--db", self.db_path, "--upload-dir", upload_dir, "--log-level", "debug"]
            )

        self.assertEqual(exit_code, 0)
        setup_logging.assert_called_once_with("debug")
        app = run_app.call_args.args[0]
        self.assertEqual(run_app.call_args.kwargs, {"host": "127.0.0.1", "port": 9090})
        self.assertTrue(os.path.isdir(upload_dir))
        self.assertTrue(any(route.resource.canonical == "/v1/messages" for route in app.router.routes()))
        app[RUNTIME_KEY].backend.close()


if __name__ == "__main__":
    unittest.main()
