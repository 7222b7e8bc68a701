from fastapi import Request

from studysphere.services.study_system import StudySystem


def get_study_system(request: Request) -> StudySystem:
    return request.app.state.study_system
