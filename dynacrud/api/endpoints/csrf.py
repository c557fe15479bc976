from typing import Annotated

from fastapi import APIRouter, Depends

from dynacrud.core.security import ActorContext, CsrfGuard, get_actor

router = APIRouter(prefix="/csrf", tags=["CSRF"])


# Token to send back as "csrf_token" with the next submission
@router.get("/token")
def issue_csrf_token(actor: Annotated[ActorContext, Depends(get_actor)]):
    return {"csrf_token": CsrfGuard().generate(actor)}
