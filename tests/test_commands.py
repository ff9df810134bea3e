import asyncio
import unittest

from consult_relay.commands import ChatCommandRouter


class ChatCommandRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.calls: list[str] = []
        self.unknown: list[str] = []

        def recorder(name: str):
            async def handler() -> None:
                self.calls.append(name)

            return handler

        self.router = ChatCommandRouter(
            on_help=recorder("help"),
            on_start=recorder("start"),
            on_end=recorder("end"),
            on_cancel=recorder("cancel"),
            on_read=recorder("read"),
            on_who=recorder("who"),
            on_history=recorder("history"),
            on_unknown=self.unknown.append,
        )

    def test_plain_text_is_not_a_command(self) -> None:
        self.assertFalse(asyncio.run(self.router.try_handle("hello there")))
        self.assertEqual([], self.calls)

    def test_routes_commands_case_insensitively(self) -> None:
        self.assertTrue(asyncio.run(self.router.try_handle("  /START now")))
        self.assertTrue(asyncio.run(self.router.try_handle("/read")))
        self.assertEqual(["start", "read"], self.calls)

    def test_unknown_command(self) -> None:
        self.assertTrue(asyncio.run(self.router.try_handle("/rate 5")))
        self.assertEqual(["/rate 5"], self.unknown)

    def test_commands_lists_quit(self) -> None:
        self.assertIn("/quit", self.router.commands)
        self.assertIn("/history", self.router.commands)


if __name__ == "__main__":
    unittest.main()
