import unittest

from store_assistant.models import ClientMessage, Role


class ClientMessageTests(unittest.TestCase):
    def test_role_strings_are_normalized(self) -> None:
        self.assertEqual(Role.ASSISTANT, ClientMessage(" Assistant ", "ok").role)
        self.assertEqual(ClientMessage(Role.USER, "hi"), ClientMessage("user", "hi"))

    def test_unknown_role_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ClientMessage("bogus", "hi")

    def test_from_dict(self) -> None:
        self.assertEqual(
            ClientMessage(Role.USER, ""),
            ClientMessage.from_dict({"role": "USER", "content": None}),
        )
        with self.assertRaises(ValueError):
            ClientMessage.from_dict({"content": "no role"})


if __name__ == "__main__":
    unittest.main()
