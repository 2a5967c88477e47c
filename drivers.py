import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, Form
from pydantic import BaseModel, Field, EmailStr

from auth import issue_otp, otp_matches, mark_verified, create_access_token, require_roles
from common import get_db, serialize, ok, now, parse_date
from schemas import Driver as DriverSchema, PHONE_PATTERN
from storage import save_attachments, storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/driver", tags=["driver"])

TOTAL_STEPS = 7

# section tag -> (registrationStep, blob prefix)
SECTIONS = {
    "personal": (1, "drivers/profile"),
    "bank": (2, "drivers/bank"),
    "aadhar": (3, "drivers/aadhar"),
    "driving-license": (4, "drivers/license"),
    "vehicle": (5, "drivers/vehicle"),
    "documents": (6, "drivers/documents"),
}

DATE_LABELS = {
    "dob": "Date of Birth",
    "dlDateOfIssue": "Date of Issue",
    "dlDateOfExpiry": "Date of Expiry",
    "vehicleRegistrationDate": "Vehicle Registration Date",
}

UPPERCASE_FIELDS = ("ifscCode", "dlNumber", "vehicleNumber")

IMAGE_TYPES = {
    "profile": "profileImage",
    "passbook": "passbookImage",
    "pan": "panCardImage",
    "aadhar-front": "aadharFrontImage",
    "aadhar-back": "aadharBackImage",
    "dl-front": "dlFrontImage",
    "dl-back": "dlBackImage",
    "rc-front": "rcFrontImage",
    "rc-back": "rcBackImage",
    "insurance": "insuranceImage",
    "pollution": "pollutionCertificateImage",
}


# -------------------- Models --------------------
class SendOtpRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)


class VerifyOtpRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    otp: str = Field(..., pattern=r"^\d{6}$")


class OnlineStatus(BaseModel):
    isOnline: bool


class DriverProfileUpdate(BaseModel):
    firstName: Optional[str] = Field(None, max_length=50)
    lastName: Optional[str] = Field(None, max_length=50)
    email: Optional[EmailStr] = None
    dob: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    address: Optional[str] = Field(None, max_length=500)
    bankName: Optional[str] = None
    accountNumber: Optional[str] = None
    ifscCode: Optional[str] = None
    branch: Optional[str] = None
    vehicleNumber: Optional[str] = None
    vehicleOwnerName: Optional[str] = None
    vehicleType: Optional[str] = None


# -------------------- Helpers --------------------

def registration_state(doc: dict) -> dict:
    completed = [s for s in SECTIONS if s in (doc.get("completedSections") or [])]
    step = doc.get("registrationStep", 1)
    return {
        "registrationStep": step,
        "isRegistrationComplete": bool(doc.get("isRegistrationComplete")),
        "completedSections": completed,
        "missingSections": [s for s in SECTIONS if s not in completed],
        "forcedComplete": bool(doc.get("forcedComplete")),
        "progress": round(step / TOTAL_STEPS * 100),
    }


def driver_profile(doc: dict) -> dict:
    out = serialize(doc)
    out.pop("_kind", None)
    out.pop("_role", None)
    out["registrationProgress"] = registration_state(doc)["progress"]
    return out


def normalize_fields(fields: dict) -> dict:
    """Drop unset values, normalize case and parse DD/MM/YYYY dates"""
    changes = {}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
        if key == "email":
            value = str(value).lower()
        elif key in UPPERCASE_FIELDS:
            value = value.upper()
        elif key in DATE_LABELS:
            parsed = parse_date(value)
            if parsed is None:
                raise HTTPException(
                    status_code=400,
                    detail=f"Invalid date format for {DATE_LABELS[key]}. Please use DD/MM/YYYY format.",
                )
            value = parsed
        changes[key] = value
    return changes


async def apply_section(driver: dict, section: str, fields: dict, files: dict) -> dict:
    """Write one registration section: only provided keys change, the step jumps to the section's number"""
    step, prefix = SECTIONS[section]
    changes = normalize_fields(fields)
    changes.update(await save_attachments(files, driver, prefix))
    changes["registrationStep"] = step
    changes["updated_at"] = now()
    if section == "personal":
        changes["isRegistrationComplete"] = False
    db = get_db()
    db["driver"].update_one(
        {"_id": driver["_id"]},
        {"$set": changes, "$addToSet": {"completedSections": section}},
    )
    logger.info("Driver %s saved registration section %s", driver["_id"], section)
    return db["driver"].find_one({"_id": driver["_id"]})


# -------------------- Auth --------------------
@router.post("/send-otp")
def send_otp(payload: SendOtpRequest):
    defaults = DriverSchema(phone=payload.phone).model_dump()
    doc, _ = issue_otp("driver", payload.phone, defaults)
    return ok({
        "phone": payload.phone,
        "isNewUser": not doc.get("isVerified"),
        "message": "Use OTP: 123456 for testing",
    }, "OTP sent successfully")


@router.post("/verify-otp")
def verify_otp(payload: VerifyOtpRequest):
    db = get_db()
    doc = db["driver"].find_one({"phone": payload.phone})
    if not doc:
        raise HTTPException(status_code=404, detail="Driver not found. Please send OTP first.")
    if not otp_matches(doc, payload.otp):
        raise HTTPException(status_code=400, detail="Invalid or expired OTP")
    doc = mark_verified("driver", doc)
    return ok({
        "driver": driver_profile(doc),
        "token": create_access_token(str(doc["_id"])),
        "isNewUser": not doc.get("firstName") or not doc.get("lastName"),
        "needsProfileCompletion": not doc.get("isRegistrationComplete"),
    }, "OTP verified successfully")


@router.post("/logout")
def logout(driver=Depends(require_roles("driver"))):
    get_db()["driver"].update_one(
        {"_id": driver["_id"]}, {"$set": {"isOnline": False, "lastActive": now()}}
    )
    return ok(message="Logged out successfully")


# -------------------- Registration --------------------
@router.put("/register/personal")
async def register_personal(
    firstName: Optional[str] = Form(None),
    lastName: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    dob: Optional[str] = Form(None),
    state: Optional[str] = Form(None),
    city: Optional[str] = Form(None),
    pincode: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    profileImage: Optional[UploadFile] = File(None),
    driver=Depends(require_roles("driver")),
):
    fields = dict(firstName=firstName, lastName=lastName, email=email, dob=dob,
                  state=state, city=city, pincode=pincode, address=address)
    doc = await apply_section(driver, "personal", fields, {"profileImage": profileImage})
    return ok(driver_profile(doc), "Personal details saved successfully")


@router.put("/register/bank")
async def register_bank(
    bankName: Optional[str] = Form(None),
    accountNumber: Optional[str] = Form(None),
    ifscCode: Optional[str] = Form(None),
    branch: Optional[str] = Form(None),
    passbookImage: Optional[UploadFile] = File(None),
    panCardImage: Optional[UploadFile] = File(None),
    driver=Depends(require_roles("driver")),
):
    fields = dict(bankName=bankName, accountNumber=accountNumber, ifscCode=ifscCode, branch=branch)
    files = {"passbookImage": passbookImage, "panCardImage": panCardImage}
    doc = await apply_section(driver, "bank", fields, files)
    return ok(driver_profile(doc), "Bank details saved successfully")


@router.put("/register/aadhar")
async def register_aadhar(
    aadharNumber: Optional[str] = Form(None),
    fullName: Optional[str] = Form(None),
    dateOfBirth: Optional[str] = Form(None),
    gender: Optional[Literal["Male", "Female", "Other"]] = Form(None),
    address: Optional[str] = Form(None),
    aadharFrontImage: Optional[UploadFile] = File(None),
    aadharBackImage: Optional[UploadFile] = File(None),
    driver=Depends(require_roles("driver")),
):
    fields = dict(aadharNumber=aadharNumber, fullName=fullName, dateOfBirth=dateOfBirth,
                  gender=gender, aadharAddress=address)
    files = {"aadharFrontImage": aadharFrontImage, "aadharBackImage": aadharBackImage}
    doc = await apply_section(driver, "aadhar", fields, files)
    return ok(driver_profile(doc), "Aadhar details saved successfully")


@router.put("/register/driving-license")
async def register_driving_license(
    dlNumber: Optional[str] = Form(None),
    dlFullName: Optional[str] = Form(None),
    dlDateOfIssue: Optional[str] = Form(None),
    dlDateOfExpiry: Optional[str] = Form(None),
    dlIssuingAuthority: Optional[str] = Form(None),
    dlAddress: Optional[str] = Form(None),
    dlFrontImage: Optional[UploadFile] = File(None),
    dlBackImage: Optional[UploadFile] = File(None),
    driver=Depends(require_roles("driver")),
):
    fields = dict(dlNumber=dlNumber, dlFullName=dlFullName, dlDateOfIssue=dlDateOfIssue,
                  dlDateOfExpiry=dlDateOfExpiry, dlIssuingAuthority=dlIssuingAuthority, dlAddress=dlAddress)
    files = {"dlFrontImage": dlFrontImage, "dlBackImage": dlBackImage}
    doc = await apply_section(driver, "driving-license", fields, files)
    return ok(driver_profile(doc), "Driving license details saved successfully")


@router.put("/register/vehicle")
async def register_vehicle(
    vehicleNumber: Optional[str] = Form(None),
    vehicleOwnerName: Optional[str] = Form(None),
    vehicleType: Optional[str] = Form(None),
    vehicleRegistrationDate: Optional[str] = Form(None),
    rcFrontImage: Optional[UploadFile] = File(None),
    rcBackImage: Optional[UploadFile] = File(None),
    driver=Depends(require_roles("driver")),
):
    fields = dict(vehicleNumber=vehicleNumber, vehicleOwnerName=vehicleOwnerName,
                  vehicleType=vehicleType, vehicleRegistrationDate=vehicleRegistrationDate)
    files = {"rcFrontImage": rcFrontImage, "rcBackImage": rcBackImage}
    doc = await apply_section(driver, "vehicle", fields, files)
    return ok(driver_profile(doc), "Vehicle details saved successfully")


@router.put("/register/documents")
async def register_documents(
    insuranceImage: Optional[UploadFile] = File(None),
    pollutionCertificateImage: Optional[UploadFile] = File(None),
    driver=Depends(require_roles("driver")),
):
    files = {"insuranceImage": insuranceImage, "pollutionCertificateImage": pollutionCertificateImage}
    doc = await apply_section(driver, "documents", {}, files)
    return ok(driver_profile(doc), "Documents saved successfully")


@router.post("/register/complete")
def complete_registration(driver=Depends(require_roles("driver"))):
    """Marks the wizard finished. Missing sections do not block this; they are recorded in forcedComplete."""
    state = registration_state(driver)
    forced = bool(state["missingSections"])
    db = get_db()
    db["driver"].update_one(
        {"_id": driver["_id"]},
        {"$set": {"registrationStep": TOTAL_STEPS, "isRegistrationComplete": True,
                  "forcedComplete": forced, "updated_at": now()}},
    )
    if forced:
        logger.warning("Driver %s completed registration with missing sections %s",
                       driver["_id"], state["missingSections"])
    doc = db["driver"].find_one({"_id": driver["_id"]})
    return ok(driver_profile(doc), "Registration completed successfully")


@router.get("/progress")
def progress(driver=Depends(require_roles("driver"))):
    return ok(registration_state(driver))


# -------------------- Profile --------------------
@router.get("/profile")
def get_profile(driver=Depends(require_roles("driver"))):
    return ok(driver_profile(driver))


@router.put("/profile")
def update_profile(payload: DriverProfileUpdate, driver=Depends(require_roles("driver"))):
    changes = normalize_fields(payload.model_dump(exclude_unset=True))
    db = get_db()
    if changes:
        changes["updated_at"] = now()
        db["driver"].update_one({"_id": driver["_id"]}, {"$set": changes})
    return ok(driver_profile(db["driver"].find_one({"_id": driver["_id"]})), "Profile updated successfully")


@router.get("/dashboard")
def dashboard(driver=Depends(require_roles("driver"))):
    if not driver.get("isApproved"):
        raise HTTPException(status_code=403, detail="Driver is not approved yet")
    state = registration_state(driver)
    return ok({
        "driver": {
            "id": str(driver["_id"]),
            "name": " ".join(p for p in (driver.get("firstName"), driver.get("lastName")) if p),
            "phone": driver.get("phone"),
            "vehicleNumber": driver.get("vehicleNumber"),
            "vehicleType": driver.get("vehicleType"),
        },
        "isOnline": bool(driver.get("isOnline")),
        "lastActive": driver.get("lastActive"),
        "registrationProgress": state["progress"],
    })


@router.put("/online-status")
def online_status(payload: OnlineStatus, driver=Depends(require_roles("driver"))):
    get_db()["driver"].update_one(
        {"_id": driver["_id"]}, {"$set": {"isOnline": payload.isOnline, "lastActive": now()}}
    )
    state = "online" if payload.isOnline else "offline"
    return ok({"isOnline": payload.isOnline}, f"Driver is now {state}")


@router.delete("/images/{image_type}")
def delete_image(image_type: str, driver=Depends(require_roles("driver"))):
    field = IMAGE_TYPES.get(image_type)
    if not field:
        raise HTTPException(status_code=400, detail="Invalid image type")
    url = driver.get(field)
    if not url:
        raise HTTPException(status_code=404, detail="Image not found")
    storage.delete(url)
    get_db()["driver"].update_one({"_id": driver["_id"]}, {"$unset": {field: ""}, "$set": {"updated_at": now()}})
    return ok(message="Image deleted successfully")
