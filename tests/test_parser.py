import pytest

from kennel.harness.parser import EventKind, FileOpKind, OutputParser, clean_line


def test_yes_no_prompt_is_a_question_not_progress() -> None:
    parser = OutputParser()

    events = parser.feed("Analyzing the config, overwrite it? [y/n]\n")

    assert len(events) == 1
    assert events[0].kind is EventKind.QUESTION
    assert "[y/n]" in events[0].text


def test_created_line_is_a_create_file_operation() -> None:
    parser = OutputParser()

    events = parser.feed(b"Created src/x.ts\n")

    assert len(events) == 1
    assert events[0].kind is EventKind.FILE_OP
    assert events[0].operation is FileOpKind.CREATE
    assert events[0].path == "src/x.ts"


def test_line_split_across_chunks_yields_exactly_one_event() -> None:
    parser = OutputParser()

    first = parser.feed(b"Created src/")
    second = parser.feed(b"x.ts\nWorking on ")

    assert first == []
    assert len(second) == 1
    assert second[0].path == "src/x.ts"


def test_partial_line_is_flushed_at_end_of_stream() -> None:
    parser = OutputParser()

    assert parser.feed("Done.") == []
    events = parser.flush()

    assert [event.kind for event in events] == [EventKind.COMPLETION]
    assert parser.flush() == []


def test_multibyte_character_split_between_chunks() -> None:
    parser = OutputParser()
    payload = "Created src/café.ts\n".encode("utf-8")
    split_at = payload.index(b"\xc3") + 1

    assert parser.feed(payload[:split_at]) == []
    events = parser.feed(payload[split_at:])

    assert events[0].path == "src/café.ts"


def test_ansi_sequences_and_spinner_glyphs_are_stripped() -> None:
    parser = OutputParser()

    events = parser.feed("\x1b[32m⠋ Working on tests\x1b[0m\r\n")

    assert len(events) == 1
    assert events[0].kind is EventKind.PROGRESS
    assert events[0].text == "Working on tests"


def test_spinner_line_without_known_prefix_counts_as_progress() -> None:
    text, had_spinner = clean_line("⠹ thinking hard")

    assert text == "thinking hard"
    assert had_spinner is True
    assert OutputParser().feed("⠹ thinking hard\n")[0].kind is EventKind.PROGRESS


def test_progress_percent_is_extracted() -> None:
    parser = OutputParser()

    events = parser.feed("[=====>    ] 45%\n")

    assert events[0].kind is EventKind.PROGRESS
    assert events[0].percent == 45


def test_carriage_return_keeps_only_last_frame() -> None:
    parser = OutputParser()

    events = parser.feed("10% complete\r55% complete\n")

    assert len(events) == 1
    assert events[0].percent == 55


def test_prose_mentioning_question_is_not_a_question() -> None:
    parser = OutputParser()

    events = parser.feed("This function answers the question of how to validate input.\n")

    assert events == []
    assert parser.line_count == 1


def test_error_line_and_completion_precedence() -> None:
    parser = OutputParser()

    events = parser.feed("error: cannot find module 'x'\nTask completed successfully\n")

    assert [event.kind for event in events] == [EventKind.ERROR, EventKind.COMPLETION]


@pytest.mark.parametrize("line", ["done.", "ALL DONE", "Successfully applied 3 edits", "task completed"])
def test_completion_lines_ignore_case(line: str) -> None:
    events = OutputParser().feed(line + "\n")

    assert [event.kind for event in events] == [EventKind.COMPLETION]


def test_overlong_line_is_forced_out() -> None:
    parser = OutputParser(max_line_length=10)

    parser.feed("x" * 25)

    assert parser.line_count == 2
    parser.flush()
    assert parser.line_count == 3


def test_output_buffer_is_bounded() -> None:
    parser = OutputParser(max_output_chars=16)

    parser.feed("0123456789\n0123456789\n")

    assert len(parser.output) == 16
    assert parser.truncated is True
    assert parser.output.endswith("0123456789\n")
