from postframe.db.models.upload import Upload

__all__ = ["Upload"]
