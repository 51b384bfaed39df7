"""Pattern-based classification of user input into memory tiers."""

import re

from .models import ClassificationResult, MemoryCategory, MemoryScope, MemoryType

MIN_TEXT_LENGTH = 10
MAX_TITLE_LENGTH = 50
MAX_TAGS = 5


def _compile(*patterns: str) -> list[re.Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


PREFERENCE_PATTERNS = _compile(
    r"我(习惯|喜欢|偏好|倾向于?)",
    r"我(一般|通常|总是|经常)",
    r"我(希望你|想让你|要求你)",
    r"(记住|记下|记得).*(偏好|习惯|喜欢)",
    r"我的(风格|方式|习惯)是",
    r"从现在开始.*(一直|总是|始终)",
    r"以后.*(都|总是|一直)",
    r"\bI (prefer|like|want|always|usually)\b",
    r"please (remember|note|keep in mind)",
)

RULE_PATTERNS = _compile(
    r"(不要|禁止|不允许|别)",
    r"(必须|一定要|务必|强制)",
    r"(规则|约定|规范|标准)是",
    r"(永远|始终|任何时候)(不要|都要)",
    r"\b(don't|never|always|must)\b",
    r"从不",
)

TEMPORAL_PATTERNS = _compile(
    r"(今天|明天|今晚|今早)",
    r"(这周|本周|下周|这个月|本月)",
    r"(马上|立刻|待会|一会儿)",
    r"(临时|暂时)",
    r"\b(today|tomorrow|tonight|this week|next week)\b",
    r"\d{1,2}(点|时|分)",
    r"\d{1,2}(月|号|日)",
)

PROJECT_PATTERNS = _compile(
    r"(这个|当前|本)(项目|工程|代码库|仓库)",
    r"(项目|工程)的?(架构|结构|设计|技术栈)",
    r"(代码|文件|模块|组件)的?(位置|路径|结构)",
    r"\bthis (project|codebase|repository|repo)\b",
)

KNOWLEDGE_PATTERNS = _compile(
    r"(是|为|叫做|称为|表示|意味着)",
    r"(可以|能够|用于|用来)",
    r"(包含|包括|由.*组成)",
    r"(定义|概念|原理|方法)",
    r"(技术|框架|工具|库|API)",
    r"\b(is|are|means|represents)\b",
    r"\b(can be|used for|consists of)\b",
)

EXPLICIT_COMMAND_PATTERNS = _compile(
    r"^(记住|记下|记得|保存|存储)",
    r"(请|帮我)?(记住|记下|保存)",
    r"^(remember|save|store|note)\b",
    r"please (remember|save|note)",
)

GLOBAL_PATTERNS = _compile(
    r"(全局|所有项目|任何项目|通用)",
    r"\b(global|all projects|any project|universal)\b",
)

HIGH_IMPORTANCE_PATTERNS = _compile(
    r"(非常|特别|极其|绝对)(重要|关键)",
    r"(必须|一定|务必)",
    r"\b(critical|crucial|essential|must)\b",
)

LOW_IMPORTANCE_PATTERNS = _compile(
    r"(可能|也许|或许)",
    r"\b(minor|optional|nice to have)\b",
)

TASK_KEYWORDS = (
    "任务", "待办", "要做", "完成", "实现", "修复", "添加",
    "task", "todo", "fix", "implement", "add", "create",
)

# Checked in order; the first MAX_TAGS matches win.
TAG_PATTERNS: dict[str, re.Pattern[str]] = {
    "go": re.compile(r"\bgolang\b|go语言|\.go\b", re.IGNORECASE),
    "python": re.compile(r"\bpython\b|\.py\b", re.IGNORECASE),
    "javascript": re.compile(r"\b(javascript|js|nodejs|node\.js)\b", re.IGNORECASE),
    "typescript": re.compile(r"\b(typescript|ts)\b", re.IGNORECASE),
    "react": re.compile(r"\b(react|reactjs)\b", re.IGNORECASE),
    "vue": re.compile(r"\b(vue|vuejs)\b", re.IGNORECASE),
    "database": re.compile(r"\b(sql|database|mysql|postgres|sqlite|mongodb)\b|数据库", re.IGNORECASE),
    "api": re.compile(r"\b(api|rest|graphql)\b|接口", re.IGNORECASE),
    "docker": re.compile(r"\b(docker|kubernetes|k8s)\b|容器", re.IGNORECASE),
    "git": re.compile(r"\b(git|github|gitlab)\b", re.IGNORECASE),
}

_SENTENCE_END = re.compile(r"[.。!！?？\n]")


def _match_any(text: str, patterns: list[re.Pattern[str]]) -> bool:
    return any(p.search(text) for p in patterns)


class MemoryClassifier:
    """Decides whether a piece of user input is worth remembering, and where.

    Pattern families are tried in a fixed order (preference, rule,
    temporal, project knowledge, general knowledge) and the first match
    decides the result. The classifier holds no state.
    """

    def classify(self, text: str) -> ClassificationResult:
        """Classify a single piece of user input.

        Args:
            text: Raw user input.

        Returns:
            A ClassificationResult; ``should_store`` is False when nothing
            matched or the text is too short.
        """
        text = text.strip()
        if len(text) < MIN_TEXT_LENGTH:
            return ClassificationResult(reason="text too short")

        if _match_any(text, PREFERENCE_PATTERNS):
            return ClassificationResult(
                should_store=True,
                memory_type=MemoryType.CORE,
                category=MemoryCategory.PREFERENCE,
                scope=MemoryScope.GLOBAL,
                title=self.extract_title(text, "User preference"),
                importance=self.extract_importance(text),
                confidence=0.8,
                reason="preference expression",
            )

        if _match_any(text, RULE_PATTERNS):
            return ClassificationResult(
                should_store=True,
                memory_type=MemoryType.CORE,
                category=MemoryCategory.RULE,
                scope=MemoryScope.GLOBAL,
                title=self.extract_title(text, "User rule"),
                importance=self.extract_importance(text),
                confidence=0.85,
                reason="rule expression",
            )

        if _match_any(text, TEMPORAL_PATTERNS):
            is_task = self._has_task_keyword(text)
            return ClassificationResult(
                should_store=True,
                memory_type=MemoryType.SHORT_TERM,
                category=MemoryCategory.TASK if is_task else MemoryCategory.NOTE,
                scope=(
                    MemoryScope.PROJECT if _match_any(text, PROJECT_PATTERNS)
                    else MemoryScope.GLOBAL
                ),
                title=self.extract_title(text, "Temporary note"),
                tags=self.extract_tags(text),
                ttl_days=3 if is_task else 7,
                importance=self.extract_importance(text),
                confidence=0.7,
                reason="temporal expression",
            )

        is_knowledge = self._is_knowledge(text)
        if is_knowledge and _match_any(text, PROJECT_PATTERNS):
            return ClassificationResult(
                should_store=True,
                memory_type=MemoryType.LONG_TERM,
                category=MemoryCategory.PROJECT,
                scope=MemoryScope.PROJECT,
                title=self.extract_title(text, "Project knowledge"),
                tags=self.extract_tags(text),
                importance=self.extract_importance(text),
                confidence=0.75,
                reason="project knowledge",
            )

        if is_knowledge:
            return ClassificationResult(
                should_store=True,
                memory_type=MemoryType.LONG_TERM,
                category=MemoryCategory.KNOWLEDGE,
                scope=MemoryScope.GLOBAL,
                title=self.extract_title(text, "Knowledge"),
                tags=self.extract_tags(text),
                importance=self.extract_importance(text),
                confidence=0.6,
                reason="declarative knowledge",
            )

        return ClassificationResult(reason="no memory-worthy pattern")

    def classify_from_conversation(
        self, user_message: str, assistant_response: str = ""
    ) -> ClassificationResult:
        """Classify a user turn, treating explicit "remember ..." commands as core.

        Args:
            user_message: What the user said.
            assistant_response: The reply; currently unused by the patterns.
        """
        result = self.classify(user_message)
        if result.should_store:
            return result

        if _match_any(user_message.strip(), EXPLICIT_COMMAND_PATTERNS):
            return ClassificationResult(
                should_store=True,
                memory_type=MemoryType.CORE,
                category=MemoryCategory.PREFERENCE,
                scope=MemoryScope.GLOBAL,
                title=self.extract_title(user_message, "User instruction"),
                importance=self.extract_importance(user_message),
                confidence=0.9,
                reason="explicit memory command",
            )
        return result

    def determine_scope(self, text: str, has_project: bool) -> MemoryScope:
        """Scope for a memory given the text and whether a project is active.

        With an active project, input is project-scoped unless it
        explicitly talks about all projects.
        """
        if not has_project:
            return MemoryScope.GLOBAL
        if _match_any(text, PROJECT_PATTERNS):
            return MemoryScope.PROJECT
        if _match_any(text, GLOBAL_PATTERNS):
            return MemoryScope.GLOBAL
        return MemoryScope.PROJECT

    def extract_importance(self, text: str) -> int:
        """5 for emphatic input, 2 for hedged input, 3 otherwise."""
        if _match_any(text, HIGH_IMPORTANCE_PATTERNS):
            return 5
        if _match_any(text, LOW_IMPORTANCE_PATTERNS):
            return 2
        return 3

    def extract_title(self, text: str, default: str) -> str:
        """First sentence of ``text``, capped at 50 characters.

        Falls back to ``default`` when the first sentence is shorter than
        five characters.
        """
        first = _SENTENCE_END.split(text.strip(), maxsplit=1)[0].strip()
        if len(first) > MAX_TITLE_LENGTH:
            first = first[:MAX_TITLE_LENGTH] + "..."
        if len(first) >= 5:
            return first
        return default

    def extract_tags(self, text: str) -> list[str]:
        """Technology tags found in ``text``, at most five."""
        tags = [tag for tag, pattern in TAG_PATTERNS.items() if pattern.search(text)]
        return tags[:MAX_TAGS]

    @staticmethod
    def _has_task_keyword(text: str) -> bool:
        lowered = text.lower()
        return any(kw in lowered for kw in TASK_KEYWORDS)

    @staticmethod
    def _is_knowledge(text: str) -> bool:
        # at least two distinct knowledge cues
        return sum(1 for p in KNOWLEDGE_PATTERNS if p.search(text)) >= 2
