from enum import Enum

class HelpCategory(str, Enum):
    Medical = "Medical"
    Food = "Food"
    Vehicle = "Vehicle"
    Other = "Other"

class ChangeKind(str, Enum):
    joined = "joined"
    left = "left"
    moved = "moved"
    status = "status"
    created = "created"
    resolved = "resolved"
    message = "message"

class Gender(str, Enum):
    male = "male"
    female = "female"
    other = "other"
    prefer_not_to_say = "prefer_not_to_say"
