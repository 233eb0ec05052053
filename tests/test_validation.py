"""Tests for the identity-integrity checks on model replies."""
import unittest

from chathub.validation import ResponseValidator

from fakes import make_registry


class TestResponseValidator(unittest.TestCase):
    def setUp(self):
        self.validator = ResponseValidator(make_registry())

    def test_claiming_another_model_is_rejected(self):
        reason = self.validator.validate("openai/gpt-4o", "Como claude-3-opus-latest, acho que devemos seguir.")
        self.assertIsNotNone(reason)
        self.assertIn("claude-3-opus-latest", reason)

    def test_self_identification_is_accepted(self):
        self.assertIsNone(self.validator.validate("openai/gpt-4o", "Como openai/gpt-4o, acho que devemos seguir."))

    def test_short_self_name_is_accepted(self):
        self.assertIsNone(self.validator.validate("openai/gpt-4o", "Falando como GPT-4o: a proposta é boa."))

    def test_case_insensitive(self):
        self.assertIsNotNone(self.validator.validate("xai/grok-3", "SOU O GPT-4o e recomendo isso."))

    def test_english_claim(self):
        self.assertIsNotNone(self.validator.validate("xai/grok-3", "Speaking as claude-3-5-haiku-latest, I agree."))

    def test_sibling_model_of_same_provider_is_rejected(self):
        self.assertIsNotNone(self.validator.validate("openai/gpt-4o", "Como gpt-4o-mini, prefiro a opção B."))

    def test_unregistered_family_token_is_rejected(self):
        self.assertIsNotNone(self.validator.validate("xai/grok-3", "Como gemini-9-ultra eu diria que sim."))

    def test_ordinary_text_is_accepted(self):
        text = "Como sistema distribuído, a matriz precisa de consenso. As opiniões variam, mas eu sou a favor."
        self.assertIsNone(self.validator.validate("deepseek/deepseek-chat", text))

    def test_speaking_for_other_model_is_rejected(self):
        reason = self.validator.validate("gemini/gemini-2.0-flash", "Segundo o claude-3-opus-latest, a proposta é fraca.")
        self.assertIsNotNone(reason)

    def test_mediator_cannot_claim_a_backend_identity(self):
        reason = self.validator.validate("auto", "Como gpt-5, recomendo a opção A.")
        self.assertIsNotNone(reason)
        self.assertIn("mediator", reason)

    def test_mediator_may_describe_delegation(self):
        text = "Consultando o openai/gpt-4o e o xai/grok-3 para coletar opiniões reais."
        self.assertIsNone(self.validator.validate("auto", text))

    def test_participant_may_not_consult_others(self):
        text = "Consultando o gpt-5, a resposta seria sim."
        self.assertIsNotNone(self.validator.validate("xai/grok-3", text))

    def test_such_as_comparison_is_accepted(self):
        text = "Modern assistants such as Claude and Gemini handle long context well, and so do we."
        self.assertIsNone(self.validator.validate("openai/gpt-4o", text))

    def test_mediator_id_as_ordinary_word_is_accepted(self):
        text = "Features such as auto scaling and retries keep the service up."
        self.assertIsNone(self.validator.validate("openai/gpt-4o", text))
        self.assertIsNone(self.validator.validate("xai/grok-3", "Como auto escala, o serviço aguenta picos."))

    def test_bare_family_names_are_not_claims(self):
        text = "Ferramentas como GPT e Claude ajudam, mas a decisão é nossa."
        self.assertIsNone(self.validator.validate("xai/grok-3", text))

    def test_tal_como_is_not_a_claim(self):
        self.assertIsNone(self.validator.validate("xai/grok-3", "Modelos tal como gpt-4o-mini respondem rápido."))

    def test_hyphenated_claim_still_rejected(self):
        self.assertIsNotNone(self.validator.validate("xai/grok-3", "Como claude-3-5-haiku-latest, eu discordo."))

    def test_empty_text_is_left_to_gateway(self):
        self.assertIsNone(self.validator.validate("openai/gpt-4o", ""))
        self.assertIsNone(self.validator.validate("openai/gpt-4o", None))


if __name__ == "__main__":
    unittest.main()
