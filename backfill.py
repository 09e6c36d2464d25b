# backfill.py - 补全 bills.related_group_id（可重复执行）
import logging
from typing import Dict

from sqlalchemy import text
from sqlalchemy.orm import Session

from config import LOG_FILE

logger = logging.getLogger(__name__)

# 仅处理未填写的账单
MISSING_GROUP = "(b.related_group_id IS NULL OR b.related_group_id = 0)"

SNAPSHOT_QUERIES = {
    'task_reward': f"""
        SELECT b.id, st.related_group_id
        FROM bills b
        JOIN submitted_tasks st ON b.task_id = st.task_id AND b.member_id = st.member_id
        WHERE b.bill_type = 'task_reward'
        AND st.related_group_id IS NOT NULL AND st.related_group_id != 0
        AND {MISSING_GROUP}
        ORDER BY b.id""",
    'group_owner_commission': f"""
        SELECT b.id, st.related_group_id
        FROM bills b
        JOIN submitted_tasks st ON b.task_id = st.task_id AND b.related_member_id = st.member_id
        WHERE b.bill_type = 'group_owner_commission'
        AND st.related_group_id IS NOT NULL AND st.related_group_id != 0
        AND {MISSING_GROUP}
        ORDER BY b.id""",
    'invite_reward': f"""
        SELECT b.id, st.related_group_id
        FROM bills b
        JOIN submitted_tasks st ON b.task_id = st.task_id AND b.related_member_id = st.member_id
        WHERE b.bill_type = 'invite_reward'
        AND st.related_group_id IS NOT NULL AND st.related_group_id != 0
        AND {MISSING_GROUP}
        ORDER BY b.id""",
    'other': f"""
        SELECT b.id, m.group_id AS related_group_id
        FROM bills b
        JOIN members m ON b.member_id = m.id
        WHERE m.group_id IS NOT NULL AND m.group_id != 0
        AND {MISSING_GROUP}
        ORDER BY b.id""",
}


def backfill_related_group_id(session: Session) -> Dict[str, int]:
    """按任务提交快照、再按会员当前群组补全账单关联群组，返回各类修复条数"""
    counts: Dict[str, int] = {}
    try:
        # 顺序固定：先用任务快照，剩余的再用会员当前群组
        for category, query in SNAPSHOT_QUERIES.items():
            rows = session.execute(text(query)).fetchall()
            fixed = 0
            for row in rows:
                result = session.execute(
                    text("""UPDATE bills SET related_group_id = :group_id
                            WHERE id = :id AND (related_group_id IS NULL OR related_group_id = 0)"""),
                    {"group_id": row.related_group_id, "id": row.id}
                )
                fixed += result.rowcount
            counts[category] = fixed
            logger.info(f"🔧 {category}: 修复 {fixed} 条账单")

        session.commit()
        logger.info(f"✅ 账单关联群组补全完成: {counts}")
        return counts
    except Exception as e:
        session.rollback()
        logger.error(f"❌ 账单关联群组补全失败: {e}")
        raise


if __name__ == "__main__":
    from database_setup import get_session_factory

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(LOG_FILE, encoding='utf-8'),
            logging.StreamHandler()
        ]
    )

    session = get_session_factory()()
    try:
        result = backfill_related_group_id(session)
        print(f"修复完成: {result}")
    finally:
        session.close()
