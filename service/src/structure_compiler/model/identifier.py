from __future__ import annotations

from pydantic import BaseModel, ConfigDict, model_validator

from ..consts import PRIMITIVE_NAMESPACE, PRIMITIVES

VALUE_KEYWORD = "Value"
CONCEPT_KEYWORD = "_Concept"
TBD_KEYWORD = "TBD"


class Identifier(BaseModel):
    """Fully qualified name of a data element, primitive or keyword.

    Accepts the dotted string form ``shr.core.Foo`` wherever an identifier
    is validated. Bare primitive names become primitive identifiers, other
    bare names (the keywords ``Value``, ``_Concept`` and ``TBD``) keep an
    empty namespace.
    """

    model_config = ConfigDict(frozen=True)

    namespace: str = ""
    name: str

    @model_validator(mode="before")
    @classmethod
    def _split_dotted(cls, data):
        if isinstance(data, str):
            if "." in data:
                namespace, name = data.rsplit(".", 1)
                return {"namespace": namespace, "name": name}
            if data in PRIMITIVES:
                return {"namespace": PRIMITIVE_NAMESPACE, "name": data}
            return {"namespace": "", "name": data}
        return data

    @staticmethod
    def parse(text: str) -> Identifier:
        return Identifier.model_validate(text)

    @staticmethod
    def primitive(name: str) -> Identifier:
        return Identifier(namespace=PRIMITIVE_NAMESPACE, name=name)

    @property
    def is_primitive(self) -> bool:
        return self.namespace == PRIMITIVE_NAMESPACE

    @property
    def is_value_keyword(self) -> bool:
        return self.namespace == "" and self.name == VALUE_KEYWORD

    @property
    def is_concept_keyword(self) -> bool:
        return self.namespace == "" and self.name == CONCEPT_KEYWORD

    @property
    def is_tbd(self) -> bool:
        return self.namespace == "" and self.name == TBD_KEYWORD

    @property
    def fqn(self) -> str:
        if self.is_primitive or not self.namespace:
            return self.name
        return f"{self.namespace}.{self.name}"

    def __str__(self) -> str:
        return self.fqn
