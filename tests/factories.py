"""
Question payloads shared by the test modules
"""


def objective_questions():
    """Two multiple-choice questions and one cloze question with two blanks"""
    return [
        {
            "id": "q1",
            "type": "multiple-choice",
            "question_text": "Pick A",
            "options": ["A", "B", "C", "D"],
            "correct_answer": "A",
            "explanation": "A is first",
        },
        {
            "id": "q2",
            "type": "multiple-choice",
            "question_text": "Is the sky blue?",
            "options": ["True", "False"],
            "correct_answer": "True",
        },
        {
            "id": "q3",
            "type": "cloze",
            "question_text": "Fill ___ and ___",
            "blanks": [
                {"blank_number": 1, "options": ["x", "z"], "correct_answer": "x"},
                {"blank_number": 2, "options": ["y", "w"], "correct_answer": "y"},
            ],
        },
    ]


def essay_questions():
    return [
        {"id": "e1", "type": "essay", "question_text": "Describe photosynthesis"},
        {"id": "e2", "type": "short-answer", "question_text": "Name a gas", "points": 3},
    ]


def mixed_questions():
    """Objective questions plus one 4-point essay"""
    return objective_questions() + [
        {"id": "e1", "type": "essay", "question_text": "Explain", "points": 4},
    ]
