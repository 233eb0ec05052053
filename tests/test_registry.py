import unittest

from chathub.models.registry import AvailabilitySnapshot, ModelRegistry

from fakes import MODELS_CONFIG, make_registry


class TestModelRegistry(unittest.TestCase):
    def setUp(self):
        self.registry = make_registry()

    def test_cards_from_config(self):
        card = self.registry.get_model("openai/gpt-4o")
        self.assertEqual(card.provider, "openai")
        self.assertEqual(card.model, "gpt-4o")
        self.assertEqual(card.credential, "OPENAI_API_KEY")
        self.assertEqual(card.runner, "aider")
        builtin = self.registry.get_model("gpt-5")
        self.assertEqual(builtin.runner, "cursor-agent")
        self.assertTrue(builtin.builtin)
        self.assertIsNone(builtin.credential)

    def test_mediator_is_registered_as_builtin(self):
        self.assertIn("auto", self.registry.builtin_ids())

    def test_normalize(self):
        normalize = self.registry.normalize_model_id
        self.assertEqual(normalize("grok-3"), "xai/grok-3")
        self.assertEqual(normalize("gpt-4o"), "openai/gpt-4o")
        self.assertEqual(normalize("prov/gpt-5"), "gpt-5")
        self.assertEqual(normalize("prov/grok-3"), "xai/grok-3")
        self.assertEqual(normalize("gpt-5"), "gpt-5")
        self.assertEqual(normalize("anthropic/claude-3-opus-latest"), "anthropic/claude-3-opus-latest")
        self.assertEqual(normalize("openai/unknown"), "openai/unknown")
        self.assertEqual(normalize("unknown-model"), "unknown-model")
        self.assertEqual(normalize(" deepseek-chat "), "deepseek/deepseek-chat")
        self.assertIsNone(normalize(None))
        self.assertEqual(normalize(""), "")

    def test_working_models_follow_snapshot(self):
        self.assertEqual(self.registry.working_models(), ["gpt-5", "sonnet-4", "auto"])
        self.registry.refresh(["xai", "openai"])
        self.assertEqual(
            self.registry.working_models(),
            ["gpt-5", "sonnet-4", "auto", "openai/gpt-4o", "openai/gpt-4o-mini", "openai/gpt-4-turbo", "xai/grok-3"],
        )
        self.assertTrue(self.registry.is_selectable("xai/grok-3"))
        self.assertFalse(self.registry.is_selectable("deepseek/deepseek-chat"))
        self.assertIsNotNone(self.registry.get_model("deepseek/deepseek-chat"))

    def test_refresh_swaps_immutable_snapshot(self):
        before = self.registry.snapshot
        after = self.registry.refresh(["openai"], [{"provider": "xai", "model": "xai/grok-3", "reason": "exit 1"}])
        self.assertIsNot(before, after)
        self.assertEqual(before.working_providers, frozenset())
        self.assertEqual(after.working_providers, frozenset({"openai"}))
        self.assertIsInstance(after, AvailabilitySnapshot)
        with self.assertRaises(Exception):
            after.working_providers = frozenset()

    def test_credential_lookup_uses_given_env(self):
        card = self.registry.get_model("openai/gpt-4o")
        self.assertEqual(self.registry.credential_for(card, {"OPENAI_API_KEY": "sk-1"}), "sk-1")
        self.assertIsNone(self.registry.credential_for(card, {}))

    def test_provider_status(self):
        status = self.registry.provider_status({"OPENAI_API_KEY": "sk-1"})
        self.assertTrue(status["openai"]["configured"])
        self.assertFalse(status["xai"]["configured"])
        self.assertNotIn("cursor", status)

    def test_duplicate_entries_ignored(self):
        config = dict(MODELS_CONFIG)
        config["providers"] = {"openai": {"models": ["gpt-4o", "gpt-4o"]}}
        registry = ModelRegistry.from_config(config)
        self.assertEqual(registry.external_ids(), ["openai/gpt-4o"])


if __name__ == "__main__":
    unittest.main()
