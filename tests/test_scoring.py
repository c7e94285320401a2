import pytest
import app as testgate


def make_question(qid, correct):
    return testgate.Question(id=qid, test_id='t', question_text=f'Q {qid}', answer_0='a', answer_1='b',
                             answer_2='c', answer_3='d', correct_answer=correct)


@pytest.mark.parametrize('selected, correct, expected', [
    (2, 2, (100, True)),
    (1, 2, (0, False)),
    (-1, 0, (0, False)),
])
def test_single_answer_is_all_or_nothing(selected, correct, expected):
    assert testgate.score_single_answer(selected, correct) == expected


def test_three_of_four_correct_passes():
    questions = [make_question(str(i), 0) for i in range(4)]
    result = testgate.score_answers(questions, {'0': 0, '1': 0, '2': 0, '3': 1})
    assert result.score == 75
    assert result.passed is True
    assert result.correct_count == 3


def test_two_of_three_rounds_to_67_and_fails():
    questions = [make_question(str(i), 3) for i in range(3)]
    result = testgate.score_answers(questions, {'0': 3, '1': 3})
    assert result.score == 67
    assert result.passed is False


def test_half_percent_rounds_up():
    # 1/8 = 12.5%
    assert testgate.round_half_up_percent(1, 8) == 13
    assert testgate.round_half_up_percent(7, 10) == 70


def test_exactly_seventy_passes():
    questions = [make_question(str(i), 1) for i in range(10)]
    selections = {str(i): 1 for i in range(7)}
    result = testgate.score_answers(questions, selections)
    assert result.score == 70
    assert result.passed is True


def test_missing_and_invalid_selections_are_unanswered():
    questions = [make_question('a', 0), make_question('b', 1)]
    result = testgate.score_answers(questions, {'b': 'seven'})
    assert [a.selected_answer for a in result.answers] == [-1, -1]
    assert result.score == 0


def test_zero_questions_scores_zero_and_fails():
    result = testgate.score_answers([], {})
    assert result.score == 0
    assert result.passed is False


def test_single_question_test_matches_single_answer_rule():
    result = testgate.score_answers([make_question('q', 2)], {'q': 2})
    assert (result.score, result.passed) == testgate.score_single_answer(2, 2)


@pytest.mark.parametrize('value, expected', [('0', 0), ('3', 3), (2, 2), ('4', -1), (None, -1), ('', -1)])
def test_normalize_selection(value, expected):
    assert testgate.normalize_selection(value) == expected
