# flake8: noqa
# scripts/admin_cli.py

"""
운영자용 관리 CLI 입니다.

    python -m scripts.admin_cli init-db
    python -m scripts.admin_cli issue-token --user-id 7 --role LH
    python -m scripts.admin_cli register-specimen --user-id 7 --role LH --image-ref signatures/7.png
"""

import asyncio
from datetime import timedelta

import typer

from labflow.core.database import AsyncSessionLocal, create_db_and_tables, engine
from labflow.core.security import Role, create_access_token
from labflow.domains.rpt import finalization
from labflow.domains.rpt import schemas as rpt_schemas

cli = typer.Typer()


@cli.command("init-db")
def init_db() -> None:
    """
    개발 환경용 스키마/테이블을 생성합니다. 운영 환경은 Alembic을 사용하세요.
    """
    async def run() -> None:
        await create_db_and_tables()
        await engine.dispose()

    asyncio.run(run())
    print("데이터베이스 스키마/테이블 생성 완료.")


@cli.command("issue-token")
def issue_token(
    user_id: int = typer.Option(..., '--user-id', help="외부 인증 시스템의 사용자 ID"),
    role: Role = typer.Option(..., '--role', case_sensitive=False, help="행위자 역할"),
    name: str = typer.Option(None, '--name', help="표시 이름"),
    minutes: int = typer.Option(60, '--minutes', help="토큰 유효 시간(분)"),
) -> None:
    """
    지정한 사용자/역할의 Bearer 토큰을 발급합니다.
    """
    claims = {"sub": str(user_id), "role": role.value}
    if name:
        claims["name"] = name
    print(create_access_token(claims, expires_delta=timedelta(minutes=minutes)))


@cli.command("register-specimen")
def register_specimen(
    user_id: int = typer.Option(..., '--user-id'),
    role: str = typer.Option("LH", '--role'),
    image_ref: str = typer.Option(..., '--image-ref', help="서명 이미지 경로 또는 참조"),
) -> None:
    """
    서명자의 서명 견본을 등록합니다 (기존 활성 견본은 비활성화).
    """
    async def run() -> None:
        async with AsyncSessionLocal() as db:
            specimen = await finalization.register_signature_specimen(
                db, obj_in=rpt_schemas.SignatureSpecimenCreate(user_id=user_id, role_code=role, image_ref=image_ref)
            )
            print(f"서명 견본 등록 완료: id={specimen.id} user={specimen.user_id} role={specimen.role_code}")
        await engine.dispose()

    asyncio.run(run())


if __name__ == "__main__":
    cli()
