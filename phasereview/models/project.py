"""
Student projects and their tasks.

A Project ("project main") is one student team's project inside a master
project; the master project owns the phase templates.  Task CRUD is handled
elsewhere in the dashboard; rows exist here so ``fetchTasks`` can feed the
analytics engine.
"""

from datetime import datetime, timezone

from phasereview.models import db


class Project(db.Model):
    """Student project attached to a master project."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    project_master_id = db.Column(db.Integer, nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    tasks = db.relationship(
        "ProjectTask", back_populates="project", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "project_main_id": self.id,
            "project_master_id": self.project_master_id,
            "project_title": self.title,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Project #{self.id} {self.title!r}>"


class ProjectTask(db.Model):
    """Task inside a student project; only is_done matters for progress."""

    __tablename__ = "project_tasks"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    priority = db.Column(db.String(30), nullable=True, comment="Low | Medium | High | Critical")
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    is_done = db.Column(db.Boolean, nullable=False, default=False)
    assigned_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    project = db.relationship("Project", back_populates="tasks")
    assignees = db.relationship(
        "ProjectTaskAssignee", back_populates="task",
        cascade="all, delete-orphan", order_by="ProjectTaskAssignee.user_id",
    )

    def to_dict(self) -> dict:
        return {
            "project_task_id": self.id,
            "project_project_main_id": self.project_id,
            "project_task_name": self.name,
            "project_task_is_done": 1 if self.is_done else 0,
            "priority_name": self.priority,
            "assigned_users": [a.user_id for a in self.assignees],
            "project_start_date": self.start_date.isoformat() if self.start_date else None,
            "project_end_date": self.end_date.isoformat() if self.end_date else None,
        }


class ProjectTaskAssignee(db.Model):
    __tablename__ = "project_task_assignees"
    __table_args__ = (
        db.UniqueConstraint("task_id", "user_id", name="uq_task_assignee"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer,
        db.ForeignKey("project_tasks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.Integer, nullable=False)

    task = db.relationship("ProjectTask", back_populates="assignees")
