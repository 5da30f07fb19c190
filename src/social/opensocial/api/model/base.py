from sqlalchemy import String, orm

from typing_extensions import Annotated

str255 = Annotated[str, 255]
str512 = Annotated[str, 512]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str255: String(255),
        str512: String(512),
    }
