"""
Skill naming tables.

Maps provider vocabulary (GitHub/GitLab language names, file extensions,
issue labels and components) onto one canonical skill name and category.
"""

import posixpath
import re
from typing import Optional, Tuple

from skillsync.schemas.skills import SkillCategory

COLLABORATION_SKILL = "Collaboration"
PROJECT_DELIVERY_SKILL = "Project Delivery"

# Provider language name -> canonical skill name
LANGUAGE_ALIASES = {
    "shell": "Shell Scripting",
    "bash": "Shell Scripting",
    "powershell": "PowerShell",
    "dockerfile": "Docker",
    "yaml": "YAML Configuration",
    "hcl": "Terraform",
    "jupyter notebook": "Python",
    "vue": "Vue.js",
    "c++": "C++",
    "c#": "C#",
    "objective-c": "Objective-C",
    "scss": "CSS",
    "sass": "CSS",
    "less": "CSS",
    "plpgsql": "SQL",
    "tsql": "SQL",
}

# File extension -> canonical skill name
EXTENSION_SKILLS = {
    "py": "Python",
    "pyi": "Python",
    "ipynb": "Python",
    "js": "JavaScript",
    "jsx": "JavaScript",
    "mjs": "JavaScript",
    "cjs": "JavaScript",
    "ts": "TypeScript",
    "tsx": "TypeScript",
    "java": "Java",
    "kt": "Kotlin",
    "kts": "Kotlin",
    "scala": "Scala",
    "go": "Go",
    "rs": "Rust",
    "rb": "Ruby",
    "php": "PHP",
    "cs": "C#",
    "cpp": "C++",
    "cc": "C++",
    "cxx": "C++",
    "hpp": "C++",
    "c": "C",
    "h": "C",
    "swift": "Swift",
    "m": "Objective-C",
    "dart": "Dart",
    "ex": "Elixir",
    "exs": "Elixir",
    "r": "R",
    "sql": "SQL",
    "sh": "Shell Scripting",
    "bash": "Shell Scripting",
    "zsh": "Shell Scripting",
    "ps1": "PowerShell",
    "yml": "YAML Configuration",
    "yaml": "YAML Configuration",
    "tf": "Terraform",
    "html": "HTML",
    "htm": "HTML",
    "css": "CSS",
    "scss": "CSS",
    "sass": "CSS",
    "less": "CSS",
    "vue": "Vue.js",
    "svelte": "Svelte",
    "graphql": "GraphQL",
    "proto": "Protocol Buffers",
}

# Whole file names that say more than their extension
SPECIAL_FILES = {
    "dockerfile": "Docker",
    "docker-compose.yml": "Docker",
    "docker-compose.yaml": "Docker",
    "jenkinsfile": "Jenkins",
    ".gitlab-ci.yml": "GitLab CI/CD",
    "makefile": "Make",
    "chart.yaml": "Kubernetes",
}

# Path fragments that identify a tool regardless of the file's extension
PATH_MARKERS = (
    (".github/workflows/", "GitHub Actions"),
    ("k8s/", "Kubernetes"),
    ("kubernetes/", "Kubernetes"),
)

SKILL_CATEGORIES = {
    "Docker": SkillCategory.INFRASTRUCTURE,
    "Kubernetes": SkillCategory.INFRASTRUCTURE,
    "Terraform": SkillCategory.INFRASTRUCTURE,
    "Jenkins": SkillCategory.INFRASTRUCTURE,
    "GitHub Actions": SkillCategory.INFRASTRUCTURE,
    "GitLab CI/CD": SkillCategory.INFRASTRUCTURE,
    "YAML Configuration": SkillCategory.INFRASTRUCTURE,
    "Make": SkillCategory.INFRASTRUCTURE,
    "SQL": SkillCategory.DATA,
    "GraphQL": SkillCategory.DATA,
    "Protocol Buffers": SkillCategory.DATA,
    "Vue.js": SkillCategory.FRAMEWORK,
    "Svelte": SkillCategory.FRAMEWORK,
    "React": SkillCategory.FRAMEWORK,
    "Django": SkillCategory.FRAMEWORK,
    "FastAPI": SkillCategory.FRAMEWORK,
    COLLABORATION_SKILL: SkillCategory.SOFT_SKILL,
    PROJECT_DELIVERY_SKILL: SkillCategory.SOFT_SKILL,
}

# Files that are not evidence of any skill (docs, lockfiles, data)
IGNORED_EXTENSIONS = {"md", "txt", "rst", "json", "lock", "csv", "svg", "png", "jpg", "gif", "ico", "xml"}

_PROGRAMMING_LANGUAGES = set(EXTENSION_SKILLS.values()) - set(SKILL_CATEGORIES) - {"HTML", "CSS"}

# Label/component spelling -> canonical name, for tags that name a known technology
_TAG_ALIASES = {
    **{name.lower(): name for name in set(EXTENSION_SKILLS.values()) | set(SKILL_CATEGORIES)},
    **LANGUAGE_ALIASES,
    "js": "JavaScript",
    "ts": "TypeScript",
    "golang": "Go",
    "k8s": "Kubernetes",
    "postgres": "SQL",
    "postgresql": "SQL",
    "mysql": "SQL",
    "react": "React",
    "reactjs": "React",
    "django": "Django",
    "fastapi": "FastAPI",
}

_TAG_SEPARATORS = re.compile(r"[-_\s]+")


def category_for(skill_name: str) -> SkillCategory:
    if skill_name in SKILL_CATEGORIES:
        return SKILL_CATEGORIES[skill_name]
    if skill_name in _PROGRAMMING_LANGUAGES or skill_name in ("HTML", "CSS"):
        return SkillCategory.PROGRAMMING_LANGUAGE
    return SkillCategory.DOMAIN


def skill_for_language(language: str) -> Optional[str]:
    """Canonical skill for a provider-reported language name (GitHub linguist, GitLab)."""
    if not language or not language.strip():
        return None
    cleaned = language.strip()
    return LANGUAGE_ALIASES.get(cleaned.lower(), cleaned)


def skill_for_path(path: str) -> Optional[str]:
    """Canonical skill evidenced by a changed file, or None for docs/data/unknown files."""
    if not path:
        return None
    normalized = path.replace("\\", "/").lower()
    for marker, skill in PATH_MARKERS:
        if marker in normalized:
            return skill
    filename = posixpath.basename(normalized)
    if filename in SPECIAL_FILES:
        return SPECIAL_FILES[filename]
    if filename.startswith("dockerfile"):
        return "Docker"
    _, ext = posixpath.splitext(filename)
    ext = ext.lstrip(".")
    if not ext or ext in IGNORED_EXTENSIONS:
        return None
    return EXTENSION_SKILLS.get(ext)


def skill_for_tag(tag: str) -> Optional[Tuple[str, SkillCategory]]:
    """Canonical (skill, category) for an issue label or component.

    Known technology tags resolve to their canonical name (so a "python"
    label and a ``.py`` file feed the same skill); anything else becomes a
    title-cased domain skill.
    """
    if not tag or not tag.strip():
        return None
    lowered = tag.strip().lower()
    if lowered in _TAG_ALIASES:
        name = _TAG_ALIASES[lowered]
        return name, category_for(name)
    words = [w for w in _TAG_SEPARATORS.split(tag.strip()) if w]
    if not words:
        return None
    name = " ".join(w if w.isupper() else w.capitalize() for w in words)
    return name, SkillCategory.DOMAIN
