"""
Inventory Snapshot Models for PatchPilot
Pydantic models describing what the external container scanner found
"""

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ContainerSnapshot(BaseModel):
    """One running container as seen by the scanner"""
    name: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)  # Image reference as written in the compose file
    version: Optional[str] = None  # Best known version, usually the image tag
    raw_metadata: str = ''  # Labels and env values, free text searched for repository hints
    is_secondary: bool = False


class StackSnapshot(BaseModel):
    """A compose stack and its containers"""
    name: str = Field(..., min_length=1)
    config_file: Optional[str] = None
    remote_hosted: bool = False
    containers: List[ContainerSnapshot] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_addressing(self):
        """A stack is addressed by its config file or by name remotely, never both"""
        if self.config_file and self.remote_hosted:
            raise ValueError(f"Stack {self.name} cannot have both a config file and remote hosting")
        return self


class InventorySnapshot(BaseModel):
    stacks: List[StackSnapshot] = Field(default_factory=list)
