from __future__ import annotations

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, UniqueConstraint

from db import Base


class IdCounter(Base):
    __tablename__ = "id_counters"

    key = Column(String, primary_key=True)
    nextValue = Column(Integer, nullable=False, default=1)


class User(Base):
    __tablename__ = "users"

    userId = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    fullName = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Role(Base):
    __tablename__ = "roles"

    roleCode = Column(String, primary_key=True)
    roleName = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("permType", "permKey", name="uq_permissions_type_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    permType = Column(String, nullable=False)
    permKey = Column(String, nullable=False)
    rolesCsv = Column(Text, nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="")
    userId = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="")
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="")
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="")
    actorRole = Column(String, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    metaJson = Column(Text, nullable=False, default="")


class Client(Base):
    __tablename__ = "clients"

    clientId = Column(String, primary_key=True)
    userId = Column(String, nullable=False, unique=True, index=True)
    companyName = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class Agency(Base):
    __tablename__ = "agencies"

    agencyId = Column(String, primary_key=True)
    userId = Column(String, nullable=False, unique=True, index=True)
    agencyName = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class Requirement(Base):
    __tablename__ = "requirements"

    requirementId = Column(String, primary_key=True)
    clientId = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="DRAFT", index=True)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class JobRole(Base):
    __tablename__ = "job_roles"

    jobRoleId = Column(String, primary_key=True)
    requirementId = Column(String, nullable=False, index=True)
    title = Column(Text, nullable=False, default="")
    quantity = Column(Integer, nullable=False, default=1)
    assignedAgencyId = Column(String, nullable=True, index=True)
    agencyStatus = Column(String, nullable=False, default="PENDING")
    adminStatus = Column(String, nullable=False, default="PENDING")
    needsMoreLabour = Column(Boolean, nullable=False, default=False)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class JobRoleForwarding(Base):
    __tablename__ = "job_role_forwardings"
    __table_args__ = (UniqueConstraint("jobRoleId", "agencyId", name="uq_forwarding_role_agency"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    jobRoleId = Column(String, nullable=False, index=True)
    agencyId = Column(String, nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=0)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class LabourProfile(Base):
    __tablename__ = "labour_profiles"

    labourId = Column(String, primary_key=True)
    agencyId = Column(String, nullable=False, index=True)
    name = Column(Text, nullable=False, default="")
    email = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="RECEIVED", index=True)
    verificationStatus = Column(String, nullable=False, default="PENDING")
    currentStage = Column(String, nullable=False, default="OFFER_LETTER_SIGN")
    # NULL: free agent, assignable to any job role.
    requirementId = Column(String, nullable=True, index=True)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="", index=True)


class LabourAssignment(Base):
    __tablename__ = "labour_assignments"
    __table_args__ = (Index("ix_assignments_role_sequence", "jobRoleId", "sequence"),)

    assignmentId = Column(String, primary_key=True)
    labourId = Column(String, nullable=False, index=True)
    jobRoleId = Column(String, nullable=False, index=True)
    agencyId = Column(String, nullable=False, index=True)
    # Monotonic FIFO position; createdAt alone can tie.
    sequence = Column(Integer, nullable=False, default=0)
    agencyStatus = Column(String, nullable=False, default="PENDING")
    adminStatus = Column(String, nullable=False, default="PENDING")
    clientStatus = Column(String, nullable=False, default="PENDING")
    isBackup = Column(Boolean, nullable=False, default=False)
    adminFeedback = Column(Text, nullable=True)
    clientFeedback = Column(Text, nullable=True)
    travelDate = Column(Text, nullable=False, default="")
    flightTicketUrl = Column(Text, nullable=False, default="")
    medicalCertificateUrl = Column(Text, nullable=False, default="")
    policeClearanceUrl = Column(Text, nullable=False, default="")
    employmentContractUrl = Column(Text, nullable=False, default="")
    additionalDocumentsJson = Column(Text, nullable=False, default="[]")
    visaUrl = Column(Text, nullable=False, default="")
    signedOfferLetterUrl = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class LabourStageHistory(Base):
    __tablename__ = "labour_stage_history"
    __table_args__ = (Index("ix_stage_history_labour_stage", "labourId", "stage"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    labourId = Column(String, nullable=False, index=True)
    stage = Column(String, nullable=False)
    status = Column(String, nullable=False, default="PENDING")
    notes = Column(Text, nullable=False, default="")
    documentsJson = Column(Text, nullable=False, default="[]")
    createdAt = Column(Text, nullable=False, default="")
    completedAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Notification(Base):
    __tablename__ = "notifications"

    notificationId = Column(String, primary_key=True)
    userId = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False, default="")
    title = Column(Text, nullable=False, default="")
    message = Column(Text, nullable=False, default="")
    priority = Column(String, nullable=False, default="NORMAL")
    entityType = Column(String, nullable=False, default="")
    entityId = Column(String, nullable=False, default="")
    actionUrl = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
    readAt = Column(Text, nullable=False, default="")
