"""
Phase workflow models: templates, instances and their append-only logs.

Business rules:
    - PhaseInstance is created once per (template, project) pair and never
      deleted; the pair is unique (uq_phase_instance_template_project).
    - PhaseStatusRecord rows are append-only.  Each row carries a
      per-instance ``sequence``; the unique constraint on
      (phase_instance_id, sequence) means two writers that read the same
      current status cannot both append, which serialises review outcomes.
    - PhaseRevision.revised_file is written once, through a conditional
      UPDATE ... WHERE revised_file IS NULL (see phase_store.answer_revision).
    - PhaseDiscussion / PhaseAttachment are write-once logs.
"""

from datetime import datetime, timezone

from phasereview.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class PhaseTemplate(db.Model):
    """Milestone definition owned by a master project (configured by teachers)."""

    __tablename__ = "phase_templates"

    id = db.Column(db.Integer, primary_key=True)
    project_master_id = db.Column(db.Integer, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    sequence = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "phase_main_id": self.id,
            "phase_main_name": self.name,
            "phase_main_description": self.description,
            "phase_start_date": _iso(self.start_date),
            "phase_end_date": _iso(self.end_date),
            "phase_sequence": self.sequence,
        }

    def __repr__(self) -> str:
        return f"<PhaseTemplate #{self.id} {self.name!r}>"


class PhaseInstance(db.Model):
    """A phase template applied to one student project ("phase project")."""

    __tablename__ = "phase_instances"
    __table_args__ = (
        db.UniqueConstraint(
            "phase_template_id", "project_id",
            name="uq_phase_instance_template_project",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    phase_template_id = db.Column(
        db.Integer,
        db.ForeignKey("phase_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    template = db.relationship("PhaseTemplate")
    status_records = db.relationship(
        "PhaseStatusRecord", back_populates="instance",
        order_by="PhaseStatusRecord.sequence", cascade="all, delete-orphan",
    )
    revisions = db.relationship(
        "PhaseRevision", back_populates="instance",
        order_by="PhaseRevision.id", cascade="all, delete-orphan",
    )
    discussions = db.relationship(
        "PhaseDiscussion", order_by="PhaseDiscussion.id", cascade="all, delete-orphan",
    )
    attachments = db.relationship(
        "PhaseAttachment", order_by="PhaseAttachment.id", cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "phase_project_id": self.id,
            "phase_main_id": self.phase_template_id,
            "project_main_id": self.project_id,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<PhaseInstance #{self.id} template={self.phase_template_id} project={self.project_id}>"


class PhaseStatusRecord(db.Model):
    """Append-only status log entry.  The latest record is the current status."""

    __tablename__ = "phase_status_records"
    __table_args__ = (
        db.UniqueConstraint(
            "phase_instance_id", "sequence",
            name="uq_phase_status_instance_sequence",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    phase_instance_id = db.Column(
        db.Integer,
        db.ForeignKey("phase_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.String(30),
        nullable=False,
        comment="NotStarted | InProgress | UnderReview | RevisionNeeded | Approved | Completed | Failed",
    )
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    instance = db.relationship("PhaseInstance", back_populates="status_records")

    def to_dict(self) -> dict:
        return {
            "phase_project_id": self.phase_instance_id,
            "sequence": self.sequence,
            "status_name": self.status,
            "phase_project_status_created_by": self.created_by,
            "phase_project_status_created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<PhaseStatusRecord instance={self.phase_instance_id} #{self.sequence} {self.status}>"


class PhaseRevision(db.Model):
    """Teacher feedback cycle; revised_file is set once by the student."""

    __tablename__ = "phase_revisions"

    id = db.Column(db.Integer, primary_key=True)
    phase_instance_id = db.Column(
        db.Integer,
        db.ForeignKey("phase_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_by = db.Column(db.Integer, nullable=True)
    feedback = db.Column(db.Text, nullable=False, default="")
    reference_file = db.Column(db.String(255), nullable=True)
    revised_file = db.Column(db.String(255), nullable=True)
    revised_by = db.Column(db.Integer, nullable=True)
    revised_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    instance = db.relationship("PhaseInstance", back_populates="revisions")

    def to_dict(self) -> dict:
        return {
            "revision_id": self.id,
            "revision_phase_project_id": self.phase_instance_id,
            "revision_created_by": self.created_by,
            "revision_feed_back": self.feedback,
            "revision_file": self.reference_file,
            "revised_file": self.revised_file,
            "revised_at": _iso(self.revised_at),
            "revision_created_at": _iso(self.created_at),
        }


class PhaseDiscussion(db.Model):
    __tablename__ = "phase_discussions"

    id = db.Column(db.Integer, primary_key=True)
    phase_instance_id = db.Column(
        db.Integer,
        db.ForeignKey("phase_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.Integer, nullable=False)
    user_role = db.Column(db.String(20), nullable=True, comment="student | teacher")
    text = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "phase_project_id": self.phase_instance_id,
            "user_id": self.user_id,
            "user_type": self.user_role,
            "discussion_text": self.text,
            "discussion_created_at": _iso(self.created_at),
        }


class PhaseAttachment(db.Model):
    __tablename__ = "phase_attachments"

    id = db.Column(db.Integer, primary_key=True)
    phase_instance_id = db.Column(
        db.Integer,
        db.ForeignKey("phase_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.Integer, nullable=False)
    filename = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "phase_project_id": self.phase_instance_id,
            "user_id": self.user_id,
            "phase_file_name": self.filename,
            "phase_file_created_at": _iso(self.created_at),
        }
