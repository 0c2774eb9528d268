"""User-authored skills and keyword-overlap skill matching.

A skill is a markdown file:

    # Skill name
    ## Description
    ## Keywords        (comma-separated)
    ## Procedure       (numbered list)
    ## Constraints     (bullet list)
    ## Tools           (comma-separated)
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SKILL_MATCH_THRESHOLD = 0.3

_STOPWORDS = frozenset(
    {
        "i", "me", "my", "we", "our", "you", "your", "it", "its", "the", "a", "an",
        "is", "are", "was", "were", "be", "been", "being", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "can", "may",
        "to", "of", "in", "for", "on", "with", "at", "by", "from", "as", "into",
        "about", "like", "through", "after", "over", "between", "out", "against",
        "during", "without", "before", "under", "around", "among", "this", "that",
        "these", "those", "then", "just", "so", "than", "too", "very", "now",
        "want", "need", "please", "help",
    }
)
_NUMBERED_RE = re.compile(r"^\d+\.\s+(.+)$")
_BULLET_RE = re.compile(r"^[-*]\s+(.+)$")


class Skill(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    procedure: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)


class SkillMatch(BaseModel):
    skill: Skill
    score: float


class SkillMatcher(Protocol):
    def match(self, request: str, skills: Iterable[Skill]) -> SkillMatch | None: ...


def parse_skill_markdown(markdown: str, skill_id: str) -> Skill:
    skill = Skill(id=skill_id)
    section: str | None = None
    for line in markdown.splitlines():
        if line.startswith("# "):
            skill.name = line[2:].strip()
            continue
        if line.startswith("## "):
            section = line[3:].strip().lower()
            continue
        text = line.strip()
        if not text:
            continue
        if section == "description":
            skill.description = f"{skill.description} {text}".strip()
        elif section == "keywords":
            skill.keywords.extend(word.strip().lower() for word in text.split(",") if word.strip())
        elif section == "procedure":
            match = _NUMBERED_RE.match(text)
            if match:
                skill.procedure.append(match.group(1).strip())
        elif section == "constraints":
            match = _BULLET_RE.match(text)
            if match:
                skill.constraints.append(match.group(1).strip())
        elif section == "tools":
            skill.tools.extend(name.strip() for name in text.split(",") if name.strip())
    return skill


def load_skills(directory: str | Path) -> list[Skill]:
    """Load every ``*.md`` skill in ``directory``; unnamed or undescribed skills are skipped."""
    root = Path(directory)
    if not root.is_dir():
        return []
    skills: list[Skill] = []
    for path in sorted(root.glob("*.md")):
        try:
            skill = parse_skill_markdown(path.read_text(encoding="utf-8"), path.stem)
        except OSError as exc:
            logger.warning("skill load failed path=%s reason=%s", path, exc)
            continue
        if skill.name and skill.description:
            skills.append(skill)
    return skills


def query_keywords(query: str) -> list[str]:
    cleaned = re.sub(r"[^\w\s]", " ", query.lower())
    keywords: list[str] = []
    for word in cleaned.split():
        if len(word) > 2 and word not in _STOPWORDS and word not in keywords:
            keywords.append(word)
    return keywords


def keyword_score(keywords: list[str], skill: Skill) -> float:
    if not keywords or not skill.keywords:
        return 0.0

    skill_keywords = [keyword.lower() for keyword in skill.keywords]
    score = 0.0
    for word in keywords:
        if word in skill_keywords:
            score += 2
        elif any(word in keyword or keyword in word for keyword in skill_keywords):
            score += 1

    description_words = [word for word in skill.description.lower().split() if word]
    for word in keywords:
        if any(word in other or other in word for other in description_words):
            score += 0.5

    return score / (len(keywords) * 2.5)


class KeywordSkillMatcher:
    """Exact keyword 2, partial keyword 1, description word 0.5, normalized to 0..1."""

    def __init__(self, threshold: float = SKILL_MATCH_THRESHOLD) -> None:
        self.threshold = threshold

    def match(self, request: str, skills: Iterable[Skill]) -> SkillMatch | None:
        keywords = query_keywords(request)
        if not keywords:
            return None

        best: SkillMatch | None = None
        for skill in skills:
            score = keyword_score(keywords, skill)
            logger.debug("skill score skill=%s score=%.2f", skill.name, score)
            if score > 0 and (best is None or score > best.score):
                best = SkillMatch(skill=skill, score=score)

        if best is None or best.score < self.threshold:
            return None
        logger.info("skill matched skill=%s score=%.2f", best.skill.name, best.score)
        return best
