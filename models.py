from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

GRADE_TYPES = ("assignment", "category", "overall")


def _iso(value):
    return value.isoformat() if value is not None else None


class School(db.Model):
    __tablename__ = "schools"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())

    def __repr__(self):
        return f"<School {self.name}>"


class Instructor(db.Model):
    __tablename__ = "instructors"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, unique=True, nullable=False)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=False)
    full_name = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())

    classes = db.relationship("Class", backref="instructor")

    def __repr__(self):
        return f"<Instructor {self.id} ({self.full_name})>"


class Student(db.Model):
    __tablename__ = "students"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, unique=True, nullable=True)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=False)
    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50), nullable=False)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())

    def __repr__(self):
        return f"<Student {self.first_name} {self.last_name}>"

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"

    def to_dict(self):
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }


class Class(db.Model):
    __tablename__ = "classes"

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=False)
    instructor_id = db.Column(
        db.Integer, db.ForeignKey("instructors.id"), nullable=False
    )
    name = db.Column(db.String(100), nullable=False)
    # Lets the overall grade rise above 100% (extra credit, curve)
    allow_extra_credit = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())
    updated_at = db.Column(
        db.DateTime,
        default=db.func.current_timestamp(),
        onupdate=db.func.current_timestamp(),
    )

    def __repr__(self):
        return f"<Class {self.id} {self.name}>"


class StudentClass(db.Model):
    """Enrollment of a student in a class; approved rows form the roster."""

    __tablename__ = "student_classes"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey("classes.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="approved")
    # Flat percentage points entered by the teacher
    extra_credit = db.Column(db.Double, nullable=False, default=0.0)
    joined_at = db.Column(db.DateTime, default=db.func.current_timestamp())

    student = db.relationship("Student", backref="enrollments")
    class_obj = db.relationship("Class", backref="enrollments")

    __table_args__ = (
        db.UniqueConstraint("student_id", "class_id", name="unique_student_class"),
    )

    def __repr__(self):
        return f"<StudentClass student:{self.student_id} class:{self.class_id}>"


class GradeCategorySet(db.Model):
    """One immutable version of a class's grade categories."""

    __tablename__ = "grade_category_sets"

    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey("classes.id"), nullable=False)
    version = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())

    categories = db.relationship(
        "GradeCategory",
        backref="category_set",
        order_by="GradeCategory.sort_order",
    )

    __table_args__ = (
        db.UniqueConstraint("class_id", "version", name="unique_class_version"),
    )

    def __repr__(self):
        return f"<GradeCategorySet class:{self.class_id} v{self.version}>"

    def to_dict(self):
        return {
            "id": self.id,
            "class_id": self.class_id,
            "version": self.version,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "categories": [c.to_dict() for c in self.categories],
        }


class GradeCategory(db.Model):
    __tablename__ = "grade_categories"

    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey("classes.id"), nullable=False)
    # NULL only for the per-class "Uncategorized" sentinel
    category_set_id = db.Column(
        db.Integer, db.ForeignKey("grade_category_sets.id"), nullable=True
    )
    name = db.Column(db.String(50), nullable=False)
    weight = db.Column(db.Double, nullable=False, default=0.0)
    drop_lowest = db.Column(db.Integer, nullable=False, default=0)
    late_penalty_per_day = db.Column(db.Double, nullable=True)
    max_late_penalty = db.Column(db.Double, nullable=True)
    allow_extra_credit = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_sentinel = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())
    deleted_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f"<GradeCategory {self.name} ({self.weight}%)>"

    def to_dict(self):
        return {
            "id": self.id,
            "class_id": self.class_id,
            "category_set_id": self.category_set_id,
            "name": self.name,
            "weight": self.weight,
            "drop_lowest": self.drop_lowest,
            "late_penalty_per_day": self.late_penalty_per_day,
            "max_late_penalty": self.max_late_penalty,
            "allow_extra_credit": self.allow_extra_credit,
            "sort_order": self.sort_order,
            "deleted_at": _iso(self.deleted_at),
        }


class Assignment(db.Model):
    __tablename__ = "assignments"

    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey("classes.id"), nullable=False)
    category_id = db.Column(
        db.Integer, db.ForeignKey("grade_categories.id"), nullable=False
    )
    title = db.Column(db.String(200), nullable=False)
    total_points = db.Column(db.Double, nullable=False, default=100.0)
    due_date = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())

    category = db.relationship("GradeCategory")

    def __repr__(self):
        return f"<Assignment {self.title} ({self.total_points} pts)>"

    def to_dict(self):
        return {
            "id": self.id,
            "class_id": self.class_id,
            "category_id": self.category_id,
            "title": self.title,
            "total_points": self.total_points,
            "due_date": _iso(self.due_date),
        }


class RawScore(db.Model):
    """Graded result of one student on one assignment."""

    __tablename__ = "raw_scores"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=False)
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("assignments.id"), nullable=False
    )
    points_earned = db.Column(db.Double, nullable=False)
    points_possible = db.Column(db.Double, nullable=False)
    is_late = db.Column(db.Boolean, nullable=False, default=False)
    days_late = db.Column(db.Double, nullable=True)
    submitted_at = db.Column(db.DateTime, nullable=True)
    graded_at = db.Column(db.DateTime, default=db.func.current_timestamp())

    assignment = db.relationship("Assignment", backref="scores")

    __table_args__ = (
        db.UniqueConstraint(
            "student_id", "assignment_id", name="unique_student_assignment"
        ),
    )

    def __repr__(self):
        return f"<RawScore {self.points_earned}/{self.points_possible}>"

    def to_dict(self):
        return {
            "id": self.id,
            "student_id": self.student_id,
            "assignment_id": self.assignment_id,
            "points_earned": self.points_earned,
            "points_possible": self.points_possible,
            "is_late": self.is_late,
            "days_late": self.days_late,
            "submitted_at": _iso(self.submitted_at),
        }


class Grade(db.Model):
    """Computed grade snapshot. Rows are never rewritten except by a curve;
    recalculation supersedes them instead.
    """

    __tablename__ = "grades"

    id = db.Column(db.Integer, primary_key=True)
    grade_type = db.Column(db.String(20), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey("classes.id"), nullable=False)
    school_id = db.Column(db.Integer, nullable=False)
    category_set_id = db.Column(
        db.Integer, db.ForeignKey("grade_category_sets.id"), nullable=True
    )
    category_id = db.Column(
        db.Integer, db.ForeignKey("grade_categories.id"), nullable=True
    )
    points_earned = db.Column(db.Double, nullable=True)
    points_possible = db.Column(db.Double, nullable=True)
    # NULL means "no data yet", which is not the same as 0%
    percentage = db.Column(db.Double, nullable=True)
    letter_grade = db.Column(db.String(2), nullable=True)
    teacher_comments = db.Column(db.Text, nullable=True)
    grade_date = db.Column(db.DateTime, nullable=False)
    superseded_at = db.Column(db.DateTime, nullable=True)
    # Bumped on every UPDATE; a write against an outdated row raises StaleDataError
    version_id = db.Column(db.Integer, nullable=False)

    category_set = db.relationship("GradeCategorySet")

    __mapper_args__ = {"polymorphic_on": grade_type, "version_id_col": version_id}
    __table_args__ = (
        db.Index(
            "ix_grades_current",
            "student_id",
            "class_id",
            "grade_type",
            "superseded_at",
        ),
    )

    # Columns a recalculation compares to decide whether a row changed
    computed_fields = (
        "school_id",
        "category_set_id",
        "category_id",
        "points_earned",
        "points_possible",
        "percentage",
        "letter_grade",
    )

    def matches(self, values: dict) -> bool:
        return all(getattr(self, key) == values.get(key) for key in self.computed_fields)

    def to_dict(self):
        return {
            "id": self.id,
            "grade_type": self.grade_type,
            "student_id": self.student_id,
            "class_id": self.class_id,
            "category_set_id": self.category_set_id,
            "category_id": self.category_id,
            "points_earned": self.points_earned,
            "points_possible": self.points_possible,
            "percentage": self.percentage,
            "letter_grade": self.letter_grade,
            "teacher_comments": self.teacher_comments,
            "grade_date": _iso(self.grade_date),
            "superseded_at": _iso(self.superseded_at),
        }


class AssignmentGrade(Grade):
    __mapper_args__ = {"polymorphic_identity": "assignment"}

    raw_score_id = db.Column(
        db.Integer, db.ForeignKey("raw_scores.id"), nullable=True
    )
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("assignments.id"), nullable=True
    )
    late_penalty = db.Column(db.Double, nullable=True)
    is_dropped = db.Column(db.Boolean, nullable=True)

    computed_fields = Grade.computed_fields + (
        "raw_score_id",
        "assignment_id",
        "late_penalty",
        "is_dropped",
    )

    def to_dict(self):
        data = super().to_dict()
        data.update(
            {
                "raw_score_id": self.raw_score_id,
                "assignment_id": self.assignment_id,
                "late_penalty": self.late_penalty,
                "is_dropped": self.is_dropped,
            }
        )
        return data


class CategoryGrade(Grade):
    __mapper_args__ = {"polymorphic_identity": "category"}

    category_name = db.Column(db.String(50), nullable=True)
    weight = db.Column(db.Double, nullable=True)
    weighted_score = db.Column(db.Double, nullable=True)

    computed_fields = Grade.computed_fields + (
        "category_name",
        "weight",
        "weighted_score",
    )

    def to_dict(self):
        data = super().to_dict()
        data.update(
            {
                "category_name": self.category_name,
                "weight": self.weight,
                "weighted_score": self.weighted_score,
            }
        )
        return data


class OverallGrade(Grade):
    __mapper_args__ = {"polymorphic_identity": "overall"}

    # Percentage before the curve is added; the curve is kept separately so
    # recalculation can replay it
    base_percentage = db.Column(db.Double, nullable=True)
    extra_credit = db.Column(db.Double, nullable=True)
    curve = db.Column(db.Double, nullable=True)

    computed_fields = Grade.computed_fields + (
        "base_percentage",
        "extra_credit",
        "curve",
    )

    def to_dict(self):
        data = super().to_dict()
        data.update(
            {
                "base_percentage": self.base_percentage,
                "extra_credit": self.extra_credit,
                "curve": self.curve,
            }
        )
        return data
