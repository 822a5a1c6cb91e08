"""Question lookup against the album catalog, honouring the trial's language."""
from fulfillment.models import Album


def questions_for(album: Album, language: str | None) -> list[str]:
    return album.questions_for(language)


def question_count(trial) -> int:
    return len(questions_for(trial.album, trial.language_preference))


def question_text(trial, index: int | None = None) -> str | None:
    """Text of question `index` (defaults to the trial's cursor), or None past the end."""
    questions = questions_for(trial.album, trial.language_preference)
    idx = trial.current_question_index if index is None else index
    if 0 <= idx < len(questions):
        return questions[idx]
    return None
