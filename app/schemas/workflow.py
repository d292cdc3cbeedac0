"""Typed workflow graph, decoded once when a stored workflow is loaded."""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


class WorkflowLoadError(Exception):
    def __init__(self, workflow_id: str, detail: str):
        self.workflow_id = workflow_id
        self.detail = detail
        super().__init__(f"Invalid workflow {workflow_id}: {detail}")


class NodeData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, value: Any) -> Any:
        # The editor stores unset fields as null; fall back to defaults.
        if isinstance(value, dict):
            return {k: v for k, v in value.items() if v is not None}
        return value


class TriggerData(NodeData):
    subType: Literal["new_message", "keywords", "new_customer", "off_hours"] = "new_message"
    keywords: list[str] = Field(default_factory=list)

    @field_validator("keywords", mode="before")
    @classmethod
    def _split_keywords(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.replace("，", ",").split(",") if part.strip()]
        return value


class AiData(NodeData):
    subType: Literal["sentiment", "intent", "language", "reply"] = "sentiment"


class ConditionData(NodeData):
    field: str = "sentiment"
    operator: Literal["equals", "not_equals", "contains"] = "equals"
    compareValue: str = ""

    @field_validator("compareValue", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return value if isinstance(value, str) else str(value)


class QuickReplyButton(BaseModel):
    label: str
    value: str


class ActionData(NodeData):
    subType: Literal["send_message", "quick_reply", "add_tag"] = "send_message"
    message: str = ""
    buttons: list[QuickReplyButton] = Field(default_factory=list)
    tags: str = ""

    @field_validator("tags", mode="before")
    @classmethod
    def _join_tags(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value)
        return value

    @property
    def tag_list(self) -> list[str]:
        raw = self.tags.replace("，", ",")
        return [tag.strip() for tag in raw.split(",") if tag.strip()]


class RoutingData(NodeData):
    subType: Literal["to_human"] = "to_human"


class EndData(NodeData):
    subType: Optional[str] = None


class TriggerNode(BaseModel):
    id: str
    type: Literal["trigger"]
    data: TriggerData = Field(default_factory=TriggerData)


class AiNode(BaseModel):
    id: str
    type: Literal["ai"]
    data: AiData = Field(default_factory=AiData)


class ConditionNode(BaseModel):
    id: str
    type: Literal["condition"]
    data: ConditionData = Field(default_factory=ConditionData)


class ActionNode(BaseModel):
    id: str
    type: Literal["action"]
    data: ActionData = Field(default_factory=ActionData)


class RoutingNode(BaseModel):
    id: str
    type: Literal["routing"]
    data: RoutingData = Field(default_factory=RoutingData)


class EndNode(BaseModel):
    id: str
    type: Literal["end"]
    data: EndData = Field(default_factory=EndData)


WorkflowNode = Annotated[
    Union[TriggerNode, AiNode, ConditionNode, ActionNode, RoutingNode, EndNode],
    Field(discriminator="type"),
]


class WorkflowEdge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    source: str
    target: str
    sourceHandle: Optional[str] = None


class WorkflowGraph(BaseModel):
    id: str
    name: str = ""
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)

    def node(self, node_id: str):
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def trigger_nodes(self) -> list[TriggerNode]:
        targets = {edge.target for edge in self.edges}
        return [n for n in self.nodes if n.type == "trigger" and n.id not in targets]

    def outgoing(self, node_id: str, source_handle: Optional[str] = None) -> list[WorkflowEdge]:
        edges = [e for e in self.edges if e.source == node_id]
        if source_handle is not None:
            edges = [e for e in edges if e.sourceHandle == source_handle]
        return edges


def load_workflow_graph(workflow_id, name: str | None, nodes: Any, edges: Any) -> WorkflowGraph:
    """Decode stored JSON nodes/edges into a WorkflowGraph or raise WorkflowLoadError."""
    try:
        return WorkflowGraph(id=str(workflow_id), name=name or "", nodes=nodes or [], edges=edges or [])
    except ValidationError as exc:
        raise WorkflowLoadError(str(workflow_id), str(exc)) from exc
