import os
from dataclasses import dataclass
from enum import Enum


class PlannerTask(str, Enum):
    CONVERSATION = "conversation"
    PLAN_STRUCTURE = "plan_structure"
    PLAN_ACTIVITIES = "plan_activities"
    PLAN_GENERATION = "plan_generation"
    PACKING_LIST = "packing_list"
    BUDGET_CATEGORIES = "budget_categories"


@dataclass
class AgentConfig:
    model_env: str  # Environment variable that overrides the model
    default_model: str
    max_tokens: int = 2048
    temperature: float = 1.0

    @property
    def model(self) -> str:
        return os.getenv(self.model_env) or self.default_model


CONVERSATION_MODEL = "claude-haiku-4-5"
PLANNING_MODEL = "claude-sonnet-4-5"


AGENT_CONFIGS: dict[PlannerTask, AgentConfig] = {
    PlannerTask.CONVERSATION: AgentConfig(
        model_env="MODEL_CONVERSATION",
        default_model=CONVERSATION_MODEL,
        max_tokens=1024,
        temperature=1.0,
    ),
    PlannerTask.PLAN_STRUCTURE: AgentConfig(
        model_env="MODEL_PLANNING",
        default_model=PLANNING_MODEL,
        max_tokens=4096,
        temperature=0.4,
    ),
    PlannerTask.PLAN_ACTIVITIES: AgentConfig(
        model_env="MODEL_PLANNING",
        default_model=PLANNING_MODEL,
        max_tokens=12288,
        temperature=0.4,
    ),
    PlannerTask.PLAN_GENERATION: AgentConfig(
        model_env="MODEL_PLANNING",
        default_model=PLANNING_MODEL,
        max_tokens=12288,
        temperature=0.4,
    ),
    PlannerTask.PACKING_LIST: AgentConfig(
        model_env="MODEL_CONVERSATION",
        default_model=CONVERSATION_MODEL,
        max_tokens=4096,
        temperature=0.4,
    ),
    PlannerTask.BUDGET_CATEGORIES: AgentConfig(
        model_env="MODEL_CONVERSATION",
        default_model=CONVERSATION_MODEL,
        max_tokens=2048,
        temperature=0.4,
    ),
}
