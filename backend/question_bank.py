import re
import json
import random
import logging
from dataclasses import dataclass, asdict
from typing import List, Optional, Set

import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Question:
    id: int
    category: str
    text: str
    answer: str

    def public(self) -> dict:
        """Question as shown to players (no answer)."""
        return {"id": self.id, "category": self.category, "text": self.text}

    def to_dict(self) -> dict:
        return asdict(self)


DEFAULT_QUESTIONS = [
    # Geography
    ("Geography", "Which country holds most of the Amazon river?", "Brazil"),
    ("Geography", "What is the capital of Italy?", "Rome"),
    ("Geography", "In which country is the Eiffel Tower?", "France"),
    ("Geography", "What is the largest ocean?", "Pacific"),
    ("Geography", "What is the largest country in the world?", "Russia"),
    # Science
    ("Science", "Which planet is closest to the Sun?", "Mercury"),
    ("Science", "What is the chemical symbol for hydrogen?", "H"),
    ("Science", "Which yellow precious metal has the symbol Au?", "Gold"),
    ("Science", "How many legs does a spider have?", "Eight"),
    ("Science", "Which organ pumps blood through the body?", "Heart"),
    # History
    ("History", "In which year did Columbus reach the Americas?", "1492"),
    ("History", "Who was the first president of the United States?", "Washington"),
    ("History", "Which civilization built Machu Picchu?", "Inca"),
    ("History", "Which war lasted from 1939 to 1945?", "World War II"),
    # General knowledge
    ("General", "How many sides does a hexagon have?", "Six"),
    ("General", "How many years are in a century?", "100"),
    ("General", "What is the currency of Japan?", "Yen"),
    # Arts
    ("Arts", "Who wrote Don Quixote?", "Cervantes"),
    ("Arts", "Who painted the Mona Lisa?", "Da Vinci"),
    ("Arts", "Who wrote Hamlet?", "Shakespeare"),
    # Entertainment
    ("Film", "What is the name of DreamWorks' green ogre?", "Shrek"),
    ("Comics", "What is Batman's secret identity?", "Bruce Wayne"),
    ("Music", "Who is known as the King of Pop?", "Michael Jackson"),
    # Sports
    ("Sports", "What is the most popular sport in Brazil?", "Football"),
    ("Sports", "How many players does a football team field?", "11"),
    ("Sports", "Which sport is played with a racket and a yellow ball?", "Tennis"),
    # Maths
    ("Maths", "What is 5 times 5?", "25"),
    ("Maths", "What do you call a shape with three sides?", "Triangle"),
]


def default_catalog() -> List[Question]:
    return [Question(i + 1, cat, text, answer) for i, (cat, text, answer) in enumerate(DEFAULT_QUESTIONS)]


def _sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from catalog text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


def _validate_item(item, position: int) -> bool:
    if not isinstance(item, dict):
        logger.warning("Question %d: expected an object, got %s", position, type(item).__name__)
        return False
    for key in ("category", "question", "answer"):
        value = item.get(key)
        if not isinstance(value, str) or not _sanitize_text(value):
            logger.warning("Question %d: missing or empty '%s'", position, key)
            return False
    return True


def parse_catalog(raw) -> List[Question]:
    """Build a catalog from a JSON-decoded list of {category, question, answer}.

    Invalid items are skipped; ids are assigned in file order.
    """
    if not isinstance(raw, list):
        raise ValueError("Question file must contain a JSON list")
    catalog = []
    for position, item in enumerate(raw, start=1):
        if not _validate_item(item, position):
            continue
        catalog.append(Question(
            id=len(catalog) + 1,
            category=_sanitize_text(item["category"])[:config.MAX_CATEGORY_LENGTH],
            text=_sanitize_text(item["question"])[:config.MAX_QUESTION_TEXT_LENGTH],
            answer=_sanitize_text(item["answer"])[:config.MAX_ANSWER_LENGTH],
        ))
    if not catalog:
        raise ValueError("Question file has no valid questions")
    return catalog


def load_questions(path: str = "") -> List[Question]:
    """Load the catalog from a JSON file, falling back to the built-in one."""
    path = path or config.QUESTIONS_FILE
    if not path:
        return default_catalog()
    try:
        with open(path, encoding="utf-8") as fh:
            catalog = parse_catalog(json.load(fh))
    except (OSError, json.JSONDecodeError, ValueError) as e:
        logger.warning("Could not load questions from %s (%s); using built-in catalog", path, e)
        return default_catalog()
    logger.info("Loaded %d questions from %s", len(catalog), path)
    return catalog


class QuestionProvider:
    """Draws random questions without repeats, avoiding back-to-back categories."""

    def __init__(self, catalog: Optional[List[Question]] = None, rng: Optional[random.Random] = None):
        self.catalog = list(catalog) if catalog is not None else default_catalog()
        if not self.catalog:
            raise ValueError("Question catalog is empty")
        self.rng = rng or random.Random()
        self.used: Set[int] = set()
        self.last_category: Optional[str] = None

    def next(self) -> Question:
        available = [q for q in self.catalog if q.id not in self.used]
        if not available:
            logger.info("Question catalog exhausted (%d), starting a new cycle", len(self.catalog))
            self.used.clear()
            available = list(self.catalog)

        # Category diversity is best-effort
        fresh = [q for q in available if q.category != self.last_category]
        candidates = fresh or available

        selected = self.rng.choice(candidates)
        self.used.add(selected.id)
        self.last_category = selected.category
        return selected

    def reset(self):
        self.used.clear()
        self.last_category = None
