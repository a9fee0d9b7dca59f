"""Skill documents: discovery, loading and lint checks."""
from .errors import FrontmatterError, SkillError, SkillNotFoundError
from .lint import lint_file, lint_path
from .loader import SkillSet, default_skill_dirs, discover_skills, load_skill
from .models import Diagnostic, Severity, Skill

__all__ = [
    "Diagnostic",
    "FrontmatterError",
    "Severity",
    "Skill",
    "SkillError",
    "SkillNotFoundError",
    "SkillSet",
    "default_skill_dirs",
    "discover_skills",
    "lint_file",
    "lint_path",
    "load_skill",
]
