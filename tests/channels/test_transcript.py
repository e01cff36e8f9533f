"""Tests for the per-conversation JSONL transcript."""

from __future__ import annotations

from relay.channels.transcript import Transcript


class TestTranscript:
    def test_user_and_bot_lines_append_in_order(self, transcript, event_factory) -> None:
        transcript.log_user(event_factory("what's the weather?", channel_id="C01"))
        transcript.log_bot("C01", "Sunny.", "1700.01")

        entries = transcript.read("C01")
        assert [e["text"] for e in entries] == ["what's the weather?", "Sunny."]
        assert entries[0]["isBot"] is False
        assert entries[1]["user"] == "bot"
        assert entries[1]["ts"] == "1700.01"
        assert entries[1]["isBot"] is True
        assert "date" in entries[0]

    def test_conversations_are_separate_files(self, transcript) -> None:
        transcript.log_bot("a", "x", "1")
        transcript.log_bot("b", "y", "2")
        assert transcript.path_for("a") != transcript.path_for("b")
        assert len(transcript.read("a")) == 1

    def test_channel_id_cannot_escape_root(self, transcript) -> None:
        path = transcript.path_for("../../etc")
        assert path.parent.parent == transcript.root

    def test_missing_transcript_reads_empty(self, transcript) -> None:
        assert transcript.read("never") == []

    def test_unwritable_root_is_logged_not_raised(self, tmp_path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("")
        transcript = Transcript(blocker)
        transcript.log_bot("C01", "x", "1")
        assert transcript.read("C01") == []
