from pydantic import BaseModel

from nearhelp.services.geo import Coordinates

class BaseSchema(BaseModel):
    class Config:
        from_attributes = True

class PointIn(BaseSchema):
    lat: float
    lng: float

    def to_coordinates(self) -> Coordinates:
        # raises InvalidCoordinate (400) rather than a 422
        return Coordinates(self.lat, self.lng)
