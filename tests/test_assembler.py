from __future__ import annotations

import pytest

from phonepilot.agent.assembler import AssemblyError, ResponseAssembler, assemble


def test_full_response_in_one_fragment():
    r = assemble(['<think>Open the app.</think><answer>do(action="Launch", app="Clock")</answer>'])
    assert r.thinking == "Open the app."
    assert r.action == 'do(action="Launch", app="Clock")'


def test_markers_split_across_fragments():
    text = "<think>Scroll down a bit.</think>\n<answer>swipe(500, 800, 500, 200)</answer>"
    for size in (1, 2, 3, 5, 8):
        fragments = [text[i:i + size] for i in range(0, len(text), size)]
        r = assemble(fragments)
        assert r.thinking == "Scroll down a bit."
        assert r.action == "swipe(500, 800, 500, 200)"
        assert r.raw == text


def test_think_tag_is_optional():
    r = assemble(["I see the home screen.\n<answer>tap(1, 2)</answer>"])
    assert r.thinking == "I see the home screen."
    assert r.action == "tap(1, 2)"


def test_action_runs_to_end_of_stream_without_close_tag():
    r = assemble(["<answer>finish(message=", '"ok")  \n'])
    assert r.action == 'finish(message="ok")'
    assert r.thinking == ""


def test_text_after_answer_close_is_ignored():
    r = assemble(["<answer>tap(1, 2)</answer> and some trailing words"])
    assert r.action == "tap(1, 2)"


def test_thinking_updates_are_cumulative_and_hold_partial_markers():
    a = ResponseAssembler()
    assert a.feed("<think>Look") == "Look"
    assert a.feed("ing at") == "Looking at"
    # "</th" could be the start of a marker and is held back
    assert a.feed(" it</th") == "Looking at it"
    assert a.feed("ink><ans") is None
    assert not a.in_action
    assert a.feed("wer>tap(1,") is None
    assert a.in_action
    assert a.feed("2)</answer>") is None
    assert a.finish().action == "tap(1,2)"


def test_missing_answer_raises():
    a = ResponseAssembler()
    a.feed("<think>I am not sure what to do</think>")
    with pytest.raises(AssemblyError):
        a.finish()


def test_empty_answer_raises():
    with pytest.raises(AssemblyError):
        assemble(["<think>x</think><answer>   </answer>"])


def test_feed_after_finish_raises():
    a = ResponseAssembler()
    a.feed("<answer>tap(1,2)")
    a.finish()
    with pytest.raises(RuntimeError):
        a.feed("more")


def test_tags_are_case_sensitive():
    with pytest.raises(AssemblyError):
        assemble(["<ANSWER>tap(1,2)</ANSWER>"])


def test_empty_fragments_are_ignored():
    a = ResponseAssembler()
    assert a.feed("") is None
    a.feed("<answer>home()")
    assert a.finish().action == "home()"
