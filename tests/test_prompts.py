from coze.prompts import DEFAULT_SYSTEM, build_chat_messages, render_prompt


class TemplatedTokenizer:
    chat_template = "{{ messages }}"

    def apply_chat_template(self, messages, tokenize, add_generation_prompt):
        assert tokenize is False
        assert add_generation_prompt is True
        return "|".join(f"{m['role']}={m['content']}" for m in messages)


class PlainTokenizer:
    chat_template = None


def test_messages_include_history_turns():
    messages = build_chat_messages([("hi", "hello")], "how are you?")
    assert messages == [
        {"role": "system", "content": DEFAULT_SYSTEM},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "user", "content": "how are you?"},
    ]


def test_mistral_has_no_system_message():
    messages = build_chat_messages([], "hi", family_hint="mistral")
    assert [m["role"] for m in messages] == ["user"]


def test_tokenizer_template_wins():
    messages = build_chat_messages([], "hi", family_hint="mistral")
    assert render_prompt(TemplatedTokenizer(), messages, "mistral") == "user=hi"


def test_family_fallback_template():
    messages = build_chat_messages([("a", "b")], "c", family_hint="mistral")
    assert render_prompt(PlainTokenizer(), messages, "mistral") == "[INST] a [/INST]b</s>[INST] c [/INST]"


def test_generic_fallback():
    messages = build_chat_messages([], "hi")
    assert render_prompt(PlainTokenizer(), messages) == f"System: {DEFAULT_SYSTEM}\nUser: hi\nAssistant:"
