"""
HTTP boundary: FastAPI server and the record -> DTO mapper.
"""
