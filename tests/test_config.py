import unittest

from chatsync.config import ChatConfig, ReconnectPolicy


class ReconnectPolicyTests(unittest.TestCase):
    def test_delays_grow_exponentially_up_to_the_cap(self):
        policy = ReconnectPolicy()
        self.assertEqual([policy.delay_for(n) for n in range(1, 8)], [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0])

    def test_attempts_are_unlimited_by_default(self):
        self.assertTrue(ReconnectPolicy().allows(10_000))
        limited = ReconnectPolicy(max_attempts=3)
        self.assertTrue(limited.allows(3))
        self.assertFalse(limited.allows(4))

    def test_attempt_numbers_start_at_one(self):
        with self.assertRaises(ValueError):
            ReconnectPolicy().delay_for(0)


class ChatConfigTests(unittest.TestCase):
    def test_defaults(self):
        config = ChatConfig.from_env({})
        self.assertEqual(config.history_limit, 50)
        self.assertEqual(config.typing_stale_after_s, 10.0)
        self.assertEqual(config.typing_sweep_interval_s, 5.0)
        self.assertEqual(config.visibility_timeout_s, 10.0)
        self.assertEqual(config.presence_channel, "user-presence")
        self.assertIsNone(config.reconnect.max_attempts)

    def test_environment_overrides(self):
        config = ChatConfig.from_env(
            {
                "CHATSYNC_HISTORY_LIMIT": "100",
                "CHATSYNC_VISIBILITY_TIMEOUT_S": "2.5",
                "CHATSYNC_AUTO_MARK_READ": "off",
                "CHATSYNC_PRESENCE_CHANNEL": "lobby",
                "CHATSYNC_RECONNECT_INITIAL_DELAY_S": "0.5",
                "CHATSYNC_RECONNECT_MAX_ATTEMPTS": "4",
                "UNRELATED": "1",
            }
        )
        self.assertEqual(config.history_limit, 100)
        self.assertEqual(config.visibility_timeout_s, 2.5)
        self.assertFalse(config.auto_mark_read)
        self.assertEqual(config.presence_channel, "lobby")
        self.assertEqual(config.reconnect.initial_delay_s, 0.5)
        self.assertEqual(config.reconnect.max_attempts, 4)

    def test_empty_values_keep_defaults(self):
        config = ChatConfig.from_env({"CHATSYNC_HISTORY_LIMIT": "", "CHATSYNC_RECONNECT_MAX_ATTEMPTS": ""})
        self.assertEqual(config.history_limit, 50)
        self.assertIsNone(config.reconnect.max_attempts)

    def test_invalid_values_name_the_variable(self):
        with self.assertRaisesRegex(ValueError, "CHATSYNC_REFRESH_ON_RECONNECT"):
            ChatConfig.from_env({"CHATSYNC_REFRESH_ON_RECONNECT": "maybe"})
        with self.assertRaisesRegex(ValueError, "CHATSYNC_RECONNECT_MAX_DELAY_S"):
            ChatConfig.from_env({"CHATSYNC_RECONNECT_MAX_DELAY_S": "soon"})


if __name__ == "__main__":
    unittest.main()
